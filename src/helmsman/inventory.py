"""Configuration directory for the helmsman automation engine.

Holds every known server plus a role index built once at load time. The
directory is read-only after loading, so the orchestrator's workers share
it without synchronization.

Loaders turn a configuration URI into a Directory and are looked up in
the plugin registry by URI scheme (yaml:, json:, file:).
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote, urlparse

import yaml

from .exceptions import InvalidPattern, LoadFailed
from .host_filter import expand_ranges
from .types import Server

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Directory:
    """All servers known to one run.

    Attributes:
        servers: Servers in configuration order
        roles: Mapping of role name to member servers, in configuration order

    Example:
        >>> directory = Directory.from_servers([
        ...     Server(name="web1", roles=frozenset({"web"})),
        ...     Server(name="db1", roles=frozenset({"db"})),
        ... ])
        >>> [s.name for s in directory.role("web")]
        ['web1']
    """

    servers: tuple[Server, ...] = ()
    roles: dict[str, tuple[Server, ...]] = field(default_factory=dict)
    _by_name: dict[str, Server] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_servers(cls, servers: Iterable[Server]) -> "Directory":
        """Build a directory and its role index.

        Raises:
            ValueError: If two servers share a name
        """
        ordered = tuple(servers)
        by_name: dict[str, Server] = {}
        roles: dict[str, list[Server]] = {}

        for server in ordered:
            if server.name in by_name:
                raise ValueError(f"Duplicate server '{server.name}'")
            by_name[server.name] = server
            for role in sorted(server.roles):
                roles.setdefault(role, []).append(server)

        return cls(
            servers=ordered,
            roles={name: tuple(members) for name, members in roles.items()},
            _by_name=by_name,
        )

    def get(self, name: str) -> Server | None:
        """Get a server by exact name."""
        return self._by_name.get(name)

    def role(self, name: str) -> tuple[Server, ...] | None:
        """Get the servers carrying a role, or None for an unknown role."""
        return self.roles.get(name)

    def names(self) -> list[str]:
        return [s.name for s in self.servers]

    def __len__(self) -> int:
        return len(self.servers)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name


def _coerce_roles(value: Any, source: str, name: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [r.strip() for r in value.split(",")]
    if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
        raise LoadFailed(source, f"roles for '{name}' must be a list of strings")
    return frozenset(r for r in value if r)


def _optional_number(value: Any, kind: type, source: str, key: str, name: str) -> Any:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise LoadFailed(source, f"{key} for '{name}' must be a number")
    return kind(value)


def directory_from_data(data: Any, source: str = "<data>") -> Directory:
    """Build a Directory from a parsed configuration document.

    Args:
        data: Parsed document (mapping with a ``servers`` list)
        source: Where the document came from, for error messages

    Returns:
        Directory with servers expanded and indexed

    Raises:
        LoadFailed: If the document does not have the expected shape

    Note:
        Expected structure:

            defaults:
              port: 22
            servers:
              - name: web[1-3].example.com
                roles: [web]
              - name: db1.example.com
                roles: [db]
                port: 2222
                user: deploy
    """
    if not isinstance(data, dict):
        raise LoadFailed(source, "top level must be a mapping")

    entries = data.get("servers")
    if not isinstance(entries, list):
        raise LoadFailed(source, "missing 'servers' list")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise LoadFailed(source, "'defaults' must be a mapping")

    servers: list[Server] = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise LoadFailed(source, f"server entry must have a name: {entry!r}")

        settings = {**defaults, **entry}
        pattern = settings["name"]

        try:
            names = expand_ranges(pattern)
        except InvalidPattern as e:
            raise LoadFailed(source, e.msg) from e

        roles = _coerce_roles(settings.get("roles"), source, pattern)
        port = _optional_number(settings.get("port"), int, source, "port", pattern)
        timeout = _optional_number(settings.get("timeout"), float, source, "timeout", pattern)
        user = settings.get("user")
        if user is not None and not isinstance(user, str):
            raise LoadFailed(source, f"user for '{pattern}' must be a string")

        for name in names:
            servers.append(Server(name=name, roles=roles, port=port, timeout=timeout, user=user))

    try:
        directory = Directory.from_servers(servers)
    except ValueError as e:
        raise LoadFailed(source, str(e)) from e

    logger.debug(f"Loaded {len(directory)} servers from {source}")
    return directory


def uri_path(uri: str) -> Path:
    """Extract the filesystem path from a configuration URI.

    Accepts ``scheme:///abs/path``, ``scheme:relative/path`` and bare paths.

    Example:
        >>> str(uri_path("yaml:///etc/helmsman/servers.yml"))
        '/etc/helmsman/servers.yml'
        >>> str(uri_path("servers.yml"))
        'servers.yml'
    """
    parsed = urlparse(uri)
    if not parsed.scheme:
        return Path(uri)
    path = parsed.netloc + parsed.path if parsed.netloc else parsed.path
    return Path(unquote(path))


def _read(uri: str) -> str:
    path = uri_path(uri)
    try:
        return path.read_text()
    except OSError as e:
        raise LoadFailed(uri, e.strerror or str(e)) from e


def _parse_yaml(uri: str, content: str) -> Directory:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise LoadFailed(uri, f"invalid YAML: {e}") from e
    return directory_from_data(data, source=uri)


def _parse_json(uri: str, content: str) -> Directory:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise LoadFailed(uri, f"invalid JSON: {e}") from e
    return directory_from_data(data, source=uri)


def load_yaml(uri: str) -> Directory:
    """Load a directory from a YAML document."""
    return _parse_yaml(uri, _read(uri))


def load_json(uri: str) -> Directory:
    """Load a directory from a JSON document."""
    return _parse_json(uri, _read(uri))


def load_file(uri: str) -> Directory:
    """Load a directory from a file, auto-detecting the format.

    JSON is detected by content (a leading ``{``); everything else is
    parsed as YAML.

    Example:
        >>> directory = load_file("servers.yml")
        >>> directory = load_file("file:///etc/helmsman/servers.json")
    """
    content = _read(uri)
    if content.lstrip().startswith("{"):
        return _parse_json(uri, content)
    return _parse_yaml(uri, content)
