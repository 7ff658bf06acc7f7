"""Plugin registry for helmsman.

Three independent namespaces map keys to factories:

- task: task name -> Task subclass (called with a RunContext)
- channel: URI scheme -> callable(uri) returning a Channel
- loader: URI scheme -> callable(uri) returning a Directory

Registering a key again replaces the earlier entry, so a site can override
any built-in by registering its own factory after the defaults.

Usage:
    from helmsman.registry import create_default_registry, ExtensionPoint

    registry = create_default_registry()
    registry.register(ExtensionPoint.TASK, "deploy", DeployTask)
    task_class = registry.lookup(ExtensionPoint.TASK, "deploy")
"""

import logging
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlparse

from .exceptions import UnknownKey

logger = logging.getLogger(__name__)

Factory = Callable[..., Any]


class ExtensionPoint(str, Enum):
    TASK = "task"
    CHANNEL = "channel"
    LOADER = "loader"


def uri_scheme(uri: str, default: str = "file") -> str:
    """Scheme of a URI, or ``default`` for a bare path.

    Example:
        >>> uri_scheme("yaml:/etc/helmsman/servers.yml")
        'yaml'
        >>> uri_scheme("/etc/helmsman/servers.yml")
        'file'
    """
    scheme = urlparse(uri).scheme
    # A single letter is a Windows drive, not a scheme
    if len(scheme) <= 1:
        return default
    return scheme.lower()


class PluginRegistry:
    """Maps (extension point, key) to a factory."""

    def __init__(self) -> None:
        self._entries: dict[ExtensionPoint, dict[str, Factory]] = {
            point: {} for point in ExtensionPoint
        }

    def register(self, point: ExtensionPoint | str, key: str, factory: Factory) -> None:
        """Register a factory. An existing entry for the key is replaced."""
        point = ExtensionPoint(point)
        entries = self._entries[point]
        if key in entries:
            logger.debug(f"Replacing {point.value} '{key}'")
        entries[key] = factory

    def lookup(self, point: ExtensionPoint | str, key: str) -> Factory:
        """Get the factory registered under a key.

        Raises:
            UnknownKey: If nothing is registered under the key
        """
        point = ExtensionPoint(point)
        try:
            return self._entries[point][key]
        except KeyError:
            raise UnknownKey(point.value, key) from None

    def keys(self, point: ExtensionPoint | str) -> list[str]:
        """Registered keys for an extension point, sorted."""
        return sorted(self._entries[ExtensionPoint(point)])

    def __contains__(self, item: tuple[ExtensionPoint | str, str]) -> bool:
        point, key = item
        return key in self._entries[ExtensionPoint(point)]

    # Helpers for the common lookups

    def create_channel(self, uri: str) -> Any:
        """Create a channel from a URI such as ``console:`` or ``mailto:ops@x``.

        Raises:
            UnknownKey: If no channel is registered for the scheme
            ValueError: If the channel rejects the URI
        """
        scheme = urlparse(uri).scheme.lower() or uri.rstrip(":").lower()
        return self.lookup(ExtensionPoint.CHANNEL, scheme)(uri)

    def load_directory(self, uri: str) -> Any:
        """Load a configuration directory; a bare path is read as ``file:``.

        Raises:
            UnknownKey: If no loader is registered for the scheme
            LoadFailed: If the loader cannot read the source
        """
        return self.lookup(ExtensionPoint.LOADER, uri_scheme(uri))(uri)

    def task_class(self, name: str) -> Any:
        return self.lookup(ExtensionPoint.TASK, name)


def create_default_registry() -> PluginRegistry:
    """Create a registry with every built-in task, channel and loader."""
    from .channels import console_channel, file_channel, mailto_channel
    from .inventory import load_file, load_json, load_yaml
    from .tasks import BUILTIN_TASKS

    registry = PluginRegistry()
    for name, task_class in BUILTIN_TASKS.items():
        registry.register(ExtensionPoint.TASK, name, task_class)

    registry.register(ExtensionPoint.CHANNEL, "console", console_channel)
    registry.register(ExtensionPoint.CHANNEL, "file", file_channel)
    registry.register(ExtensionPoint.CHANNEL, "mailto", mailto_channel)

    registry.register(ExtensionPoint.LOADER, "yaml", load_yaml)
    registry.register(ExtensionPoint.LOADER, "json", load_json)
    registry.register(ExtensionPoint.LOADER, "file", load_file)
    return registry
