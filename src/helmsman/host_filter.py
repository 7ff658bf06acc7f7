"""Target resolution for helmsman.

Turns the operator's server and role selections into the ordered,
deduplicated list of servers a task runs against. Supports:
- Exact names: web1.example.com
- Abbreviations: web1 (unambiguous prefix of a known name)
- Numeric ranges: web[1-3] -> web1, web2, web3 (zero padding is kept)
- Roles: any role label from the configuration
- Exclusions: the same token kinds, subtracted from the inclusion set

Resolution is pure: no I/O, nothing is mutated.
"""

import re
from typing import TYPE_CHECKING, Iterable, Sequence

from .exceptions import AmbiguousReference, InvalidPattern, UnknownRole, UnknownServer
from .types import Server

if TYPE_CHECKING:
    from .inventory import Directory

# Anything in brackets is treated as a range attempt so that typos fail loudly
_BRACKET_RE = re.compile(r"\[([^\]]*)\]")
_RANGE_BODY_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


def split_tokens(values: Iterable[str] | None) -> list[str]:
    """Flatten repeatable, comma-separated option values into tokens.

    Args:
        values: Raw option values, e.g. ("web1,web2", "db1")

    Returns:
        List of non-empty, stripped tokens in the order given

    Example:
        >>> split_tokens(["web1,web2", " db1 "])
        ['web1', 'web2', 'db1']
    """
    tokens: list[str] = []
    for value in values or ():
        for part in value.split(","):
            part = part.strip()
            if part:
                tokens.append(part)
    return tokens


def expand_ranges(token: str) -> list[str]:
    """Expand every bracketed integer range in a token.

    Args:
        token: A name or role token, possibly containing ranges

    Returns:
        One token per member of the range(s), in ascending order

    Raises:
        InvalidPattern: If a bracket does not hold ``start-end`` or start > end

    Example:
        >>> expand_ranges("web[1-3]")
        ['web1', 'web2', 'web3']
        >>> expand_ranges("node[08-10].rack[1-2]")
        ['node08.rack1', 'node08.rack2', 'node09.rack1', 'node09.rack2', 'node10.rack1', 'node10.rack2']
    """
    match = _BRACKET_RE.search(token)
    if match is None:
        if "[" in token or "]" in token:
            raise InvalidPattern(token, "unbalanced brackets")
        return [token]

    body = _RANGE_BODY_RE.match(match.group(1))
    if body is None:
        raise InvalidPattern(token, f"'[{match.group(1)}]' is not a numeric range")

    start_text, end_text = body.group(1), body.group(2)
    start, end = int(start_text), int(end_text)
    if start > end:
        raise InvalidPattern(token, f"range start {start} is greater than end {end}")

    # web[01-10] keeps the width of the start bound
    width = len(start_text) if start_text.startswith("0") and len(start_text) > 1 else 0

    prefix, suffix = token[: match.start()], token[match.end():]
    expanded: list[str] = []
    for number in range(start, end + 1):
        member = str(number).zfill(width) if width else str(number)
        expanded.extend(expand_ranges(f"{prefix}{member}{suffix}"))
    return expanded


def expand_all(tokens: Sequence[str]) -> list[str]:
    """Expand ranges in every token, keeping order."""
    expanded: list[str] = []
    for token in tokens:
        expanded.extend(expand_ranges(token))
    return expanded


def match_server(token: str, directory: "Directory") -> Server:
    """Resolve one name token to a server.

    An exact name wins. Otherwise the token is treated as an abbreviation
    and must be a prefix of exactly one server name. When several names
    share the prefix, a name where the prefix is followed by a dot is
    preferred, so "web1" picks web1.example.com over web10.example.com.

    Args:
        token: Server name or abbreviation
        directory: Configuration directory to search

    Returns:
        The matching server

    Raises:
        UnknownServer: If nothing matches
        AmbiguousReference: If the abbreviation matches several servers
    """
    exact = directory.get(token)
    if exact is not None:
        return exact

    candidates = [s for s in directory.servers if s.name.startswith(token)]
    if not candidates:
        raise UnknownServer(token)
    if len(candidates) == 1:
        return candidates[0]

    bounded = [s for s in candidates if s.name[len(token)] == "."]
    if len(bounded) == 1:
        return bounded[0]

    raise AmbiguousReference(token, sorted(s.name for s in candidates))


def _servers_for(
    names: Sequence[str],
    roles: Sequence[str],
    directory: "Directory",
) -> list[Server]:
    """Resolve names then roles into a deduplicated, ordered list."""
    seen: set[str] = set()
    result: list[Server] = []

    def add(server: Server) -> None:
        if server.name not in seen:
            seen.add(server.name)
            result.append(server)

    for token in expand_all(names):
        add(match_server(token, directory))

    for role in expand_all(roles):
        members = directory.role(role)
        if members is None:
            raise UnknownRole(role)
        for server in members:
            add(server)

    return result


def resolve_targets(
    directory: "Directory",
    servers: Sequence[str] | None = None,
    roles: Sequence[str] | None = None,
    exclude_servers: Sequence[str] | None = None,
    exclude_roles: Sequence[str] | None = None,
) -> list[Server]:
    """Resolve inclusion and exclusion selections into target servers.

    Args:
        directory: Loaded configuration directory
        servers: Name, abbreviation or range tokens to include
        roles: Role tokens to include
        exclude_servers: Name, abbreviation or range tokens to exclude
        exclude_roles: Role tokens to exclude

    Returns:
        Servers in first-seen order (names, then roles) minus exclusions.
        When no inclusion is given, every server in the directory is
        included. An empty result is valid.

    Raises:
        PatternError: On malformed ranges, unknown or ambiguous names,
            or unknown roles, in inclusions and exclusions alike

    Examples:
        # Everything
        resolve_targets(directory)

        # All web servers except web2
        resolve_targets(directory, roles=["web"], exclude_servers=["web2"])

        # A range of abbreviations
        resolve_targets(directory, servers=["web[1-3]"])
    """
    servers = list(servers or ())
    roles = list(roles or ())

    if servers or roles:
        included = _servers_for(servers, roles, directory)
    else:
        included = list(directory.servers)

    excluded = {
        s.name for s in _servers_for(list(exclude_servers or ()), list(exclude_roles or ()), directory)
    }

    return [s for s in included if s.name not in excluded]


def format_filter_summary(
    original_count: int,
    filtered_count: int,
) -> str:
    """Format a summary of target resolution.

    Args:
        original_count: Number of servers in the directory
        filtered_count: Number of servers selected

    Returns:
        Human-readable summary string
    """
    if filtered_count == original_count:
        return f"All {original_count} server(s) selected"

    excluded = original_count - filtered_count
    return f"Selected {filtered_count}/{original_count} servers ({excluded} not selected)"
