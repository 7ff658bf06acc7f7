"""Task dispatch for helmsman.

This module runs one task across a resolved set of servers, serially or
through a bounded pool of concurrent host units, taking the run's locks,
reporting every lifecycle step to the event broadcaster and aggregating
per-host outcomes.

A host's failure never affects another host. Only a task-declared fatal
condition (or remote lock contention under the "abort" policy) stops the
run early; hosts not yet started are then reported as skipped.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

from .events import EventBroadcaster, RunInfo
from .exceptions import (
    AlreadyLocked,
    AuthFailed,
    FatalTaskError,
    LockError,
    TaskError,
    TransportError,
    TransportTimeout,
)
from .locking import LockCoordinator
from .ssh import SSHTransport, Transport
from .task import Task
from .types import ExecutionMode, FailureReason, HostOutcome, RunConfig, RunOutcome, Server

logger = logging.getLogger(__name__)


@dataclass
class _Dispatch:
    """Mutable state of one run."""

    locks: LockCoordinator
    notify: EventBroadcaster
    aborted: bool = False
    abort_reason: str = ""

    def abort(self, reason: str) -> None:
        if not self.aborted:
            self.aborted = True
            self.abort_reason = reason


class TaskExecutor:
    """Runs tasks across servers.

    Attributes:
        transport: Opens sessions to servers
        config: Run-wide settings (mode, bound, timeout, locks)
        notify: Broadcaster receiving lifecycle and log events; when None,
            each run uses the broadcaster its task is bound to
        run_id: Identifier of the current run, written into locks

    Example:
        >>> executor = TaskExecutor(config=RunConfig(mode="parallel", max_parallel=10))
        >>> outcome = await executor.run(task, targets)
        >>> print(f"Failed: {[h.server.name for h in outcome.failures]}")
    """

    def __init__(
        self,
        transport: Transport | None = None,
        config: RunConfig | None = None,
        notify: EventBroadcaster | None = None,
        run_id: str | None = None,
    ) -> None:
        self.transport = transport or SSHTransport()
        self.config = config or RunConfig()
        self.notify = notify
        self.run_id = run_id or uuid.uuid4().hex

    async def run(self, task: Task, targets: list[Server]) -> RunOutcome:
        """Run a task against every target.

        Args:
            task: Task bound to this run's context
            targets: Resolved servers, in dispatch order

        Returns:
            RunOutcome with one entry per target, in target order

        Raises:
            TaskValidationError: If validation fails (no host is touched)
            AlreadyLocked: If the local lock is held by another run
            TaskError: If setup or teardown fails
        """
        targets = list(targets)
        notify = self._bind_notify(task)
        task.validate()

        state = _Dispatch(
            locks=LockCoordinator(
                self.config.lock_scope,
                task.name,
                self.run_id,
                lock_dir=self.config.lock_dir,
            ),
            notify=notify,
        )
        run_info = RunInfo(task=task.name, run_id=self.run_id, servers=targets)
        outcome = RunOutcome()

        async with state.locks.run_lock():
            notify.initialize(run_info)
            try:
                await task.setup()
                if not targets:
                    notify.warn("No servers selected, nothing to do")
                elif self.config.mode is ExecutionMode.SERIAL:
                    outcome.hosts = await self._run_serial(task, targets, state)
                else:
                    outcome.hosts = await self._run_parallel(task, targets, state)
                outcome.aborted = state.aborted
            finally:
                try:
                    await task.teardown()
                finally:
                    run_info.outcome = outcome
                    notify.finalize(run_info)

        logger.info(
            f"Task {task.name} finished: {len(outcome.successes)} succeeded, "
            f"{len(outcome.failures)} failed, {len(outcome.skipped)} skipped"
        )
        return outcome

    def _bind_notify(self, task: Task) -> EventBroadcaster:
        """Pick the run's single broadcaster and bind the task to it."""
        if self.notify is None:
            return task.context.notify
        if task.context.notify is not self.notify:
            logger.debug(f"Rebinding task {task.name} to the executor's broadcaster")
            task.context.notify = self.notify
        return self.notify

    async def _run_serial(
        self,
        task: Task,
        targets: list[Server],
        state: _Dispatch,
    ) -> list[HostOutcome]:
        """Process hosts one at a time, in order."""
        results: list[HostOutcome] = []
        for server in targets:
            if state.aborted:
                results.append(HostOutcome.skipped(server, state.abort_reason))
                continue
            results.append(await self._run_host(task, server, state))
        return results

    async def _run_parallel(
        self,
        task: Task,
        targets: list[Server],
        state: _Dispatch,
    ) -> list[HostOutcome]:
        """Process hosts through a pool of at most ``max_parallel`` units.

        A slot is taken before a unit is created and given back when it
        finishes, so the bound holds at every instant. Submission follows
        target order; completion order is whatever the hosts make it.
        """
        slots = asyncio.Semaphore(self.config.max_parallel)
        results: list[HostOutcome | None] = [None] * len(targets)
        running: list[asyncio.Task[None]] = []

        async def unit(index: int, server: Server) -> None:
            try:
                results[index] = await self._run_host(task, server, state)
            finally:
                slots.release()

        for index, server in enumerate(targets):
            await slots.acquire()
            if state.aborted:
                slots.release()
                break
            running.append(asyncio.create_task(unit(index, server)))

        if running:
            await asyncio.gather(*running)

        return [
            result if result is not None else HostOutcome.skipped(server, state.abort_reason)
            for server, result in zip(targets, results)
        ]

    async def _run_host(self, task: Task, server: Server, state: _Dispatch) -> HostOutcome:
        """One host's unit of work. Never raises for host-scoped failures."""
        start = time.perf_counter()
        state.notify.start_server(server)

        try:
            await self._execute_on(task, server, state)
            outcome = HostOutcome.success(server)
        except FatalTaskError as e:
            state.abort(f"Skipped after fatal error on {server.name}")
            outcome = HostOutcome.failure(server, FailureReason.TASK, e.msg)
        except AlreadyLocked as e:
            if self.config.lock_contention == "abort":
                state.abort(f"Skipped after lock contention on {server.name}")
            outcome = HostOutcome.failure(server, FailureReason.LOCK, e.msg)
        except LockError as e:
            outcome = HostOutcome.failure(server, FailureReason.LOCK, e.msg)
        except AuthFailed as e:
            outcome = HostOutcome.failure(server, FailureReason.AUTH, e.msg)
        except TransportTimeout as e:
            outcome = HostOutcome.failure(server, FailureReason.TIMEOUT, e.msg)
        except asyncio.TimeoutError:
            timeout = server.timeout or self.config.timeout
            outcome = HostOutcome.failure(
                server, FailureReason.TIMEOUT, f"Timed out after {timeout}s on {server.name}"
            )
        except TransportError as e:
            outcome = HostOutcome.failure(server, FailureReason.CONNECTION, e.msg)
        except TaskError as e:
            outcome = HostOutcome.failure(server, FailureReason.TASK, e.msg)
        except Exception as e:
            logger.exception(f"Task {task.name} crashed on {server.name}")
            outcome = HostOutcome.failure(server, FailureReason.TASK, f"{type(e).__name__}: {e}")

        outcome.duration = time.perf_counter() - start
        if outcome.is_failure:
            state.notify.error(outcome.message, server)
        else:
            state.notify.debug(f"Completed in {outcome.duration:.2f}s", server)
        state.notify.end_server(server)
        return outcome

    async def _execute_on(self, task: Task, server: Server, state: _Dispatch) -> None:
        """Open a session, lock the host, run the task, unlock, close."""
        timeout = server.timeout or self.config.timeout
        session = await self.transport.open(server, timeout=timeout, sudo_user=self.config.sudo)
        try:
            async with state.locks.host_lock(session, server):
                if timeout:
                    await asyncio.wait_for(task.execute(session, server), timeout)
                else:
                    await task.execute(session, server)
        finally:
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Error closing session to {server.name}: {e}")
