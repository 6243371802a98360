"""Immutable catalog of permission identifiers.

Identifiers are colon-separated paths (``api:portfolio:accounts:read``).
Interior nodes may declare parameter names (``userId``, ``accountId``) which
every descendant inherits; leaves are classified as read or write. Each
interior node also exposes ``<node>:_read`` and ``<node>:_write`` aggregate
identifiers, and ``_read``/``_write`` are the global roots.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

ROOT_READ = "_read"
ROOT_WRITE = "_write"
READ_SUFFIX = ":_read"
WRITE_SUFFIX = ":_write"


class AccessKind(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class Permission:
    identifier: str
    description: str
    kind: Optional[AccessKind] = None
    parameters: Tuple[str, ...] = ()
    is_leaf: bool = False


@dataclass(frozen=True)
class _NodeDef:
    segment: str
    description: str
    parameters: Tuple[str, ...] = ()
    kind: Optional[AccessKind] = None
    children: Tuple["_NodeDef", ...] = ()


def _node(segment: str, description: str, *children: _NodeDef, params: Iterable[str] = ()) -> _NodeDef:
    return _NodeDef(segment, description, tuple(params), None, tuple(children))


def _r(segment: str, description: str, params: Iterable[str] = ()) -> _NodeDef:
    return _NodeDef(segment, description, tuple(params), AccessKind.READ)


def _w(segment: str, description: str, params: Iterable[str] = ()) -> _NodeDef:
    return _NodeDef(segment, description, tuple(params), AccessKind.WRITE)


_TREE = _node(
    "api",
    "API operations.",
    _node(
        "user",
        "Authenticated user profile and security settings.",
        _node(
            "profile",
            "User profile data.",
            _r("read", "Read the user's profile."),
            _w("update", "Update profile attributes such as display name."),
            _w("avatar", "Upload or replace the profile avatar."),
        ),
        _node(
            "security",
            "User security credentials.",
            _r("activity", "Read recent security-related activity."),
            _w("change_password", "Change the password with the current credential."),
            _w("reset_password", "Reset a password using an out-of-band token."),
            _w("mfa_configure", "Configure multi-factor authentication devices."),
        ),
        params=("userId",),
    ),
    _node(
        "portfolio",
        "Portfolio management scoped to a single user.",
        _node(
            "accounts",
            "Trading accounts within a portfolio.",
            _r("list", "List accounts."),
            _r("read", "Read account details."),
            _w("create", "Create an account."),
            _w("update", "Update account metadata."),
            _w("archive", "Archive an account."),
            params=("accountId",),
        ),
        _node(
            "positions",
            "Open and closed trading positions.",
            _r("list", "List positions."),
            _r("read", "Read a position."),
            _w("open", "Open a manual position entry."),
            _w("close", "Close a position."),
            params=("positionId",),
        ),
        _node(
            "performance",
            "Portfolio performance analytics.",
            _r("summary", "Read aggregate performance metrics."),
            _r("timeseries", "Read performance data points over time."),
            _r("distribution", "Read allocation distribution data."),
        ),
        params=("userId",),
    ),
    _node(
        "market",
        "Market data and discovery.",
        _node(
            "assets",
            "Asset catalog.",
            _r("list", "List supported assets."),
            _r("metadata", "Read metadata for an asset.", params=("symbol",)),
            _r("search", "Search assets."),
        ),
        _node(
            "prices",
            "Price discovery.",
            _r("latest", "Read the latest price tick."),
            _r("historical", "Read historical candles.", params=("granularity",)),
            params=("symbol",),
        ),
        _node(
            "orderbooks",
            "Order book snapshots and streams.",
            _r("read", "Read an order book snapshot."),
            _r("stream", "Subscribe to order book updates."),
            params=("symbol",),
        ),
    ),
    _node(
        "auth",
        "Credential and session management for a user.",
        _r("me", "Read the caller's identity."),
        _w("refresh", "Exchange a refresh token for a new credential pair."),
        _w("logout", "End the current session."),
        _w("upgrade", "Give an anonymous account a username and password."),
        _node(
            "sessions",
            "Login sessions.",
            _r("list", "List sessions."),
            _w("revoke", "Revoke one session."),
            _w("revoke_all", "Revoke every session."),
        ),
        _node(
            "api_keys",
            "Restricted API keys.",
            _r("list", "List API keys."),
            _w("create", "Create an API key."),
            _w("revoke", "Revoke an API key."),
        ),
        _node(
            "passkeys",
            "Passkey credentials.",
            _r("list", "List passkeys."),
            _w("register", "Register a passkey."),
            _w("rename", "Rename a passkey."),
            _w("delete", "Delete a passkey."),
        ),
        params=("userId",),
    ),
)


def _flatten(node: _NodeDef, prefix: str, inherited: Tuple[str, ...]) -> List[Permission]:
    identifier = f"{prefix}:{node.segment}" if prefix else node.segment
    params = inherited + tuple(p for p in node.parameters if p not in inherited)
    if node.kind is not None:
        return [Permission(identifier, node.description, node.kind, params, is_leaf=True)]
    out = [
        Permission(identifier, node.description, None, params),
        Permission(identifier + READ_SUFFIX, f"Read access under {identifier}.", AccessKind.READ, params),
        Permission(identifier + WRITE_SUFFIX, f"Write access under {identifier}.", AccessKind.WRITE, params),
    ]
    for child in node.children:
        out.extend(_flatten(child, identifier, params))
    return out


class PermissionCatalog:
    """Lookup structure over the flattened permission tree."""

    def __init__(self, roots: Iterable[_NodeDef]) -> None:
        entries = [
            Permission(ROOT_READ, "Read access to all platform operations.", AccessKind.READ),
            Permission(ROOT_WRITE, "Write access to all platform operations.", AccessKind.WRITE),
        ]
        for root in roots:
            entries.extend(_flatten(root, "", ()))
        self._by_id: Dict[str, Permission] = {p.identifier: p for p in entries}
        self._read_leaves: FrozenSet[str] = frozenset(
            p.identifier for p in entries if p.is_leaf and p.kind is AccessKind.READ
        )
        self._write_leaves: FrozenSet[str] = frozenset(
            p.identifier for p in entries if p.is_leaf and p.kind is AccessKind.WRITE
        )

    def get(self, identifier: str) -> Optional[Permission]:
        return self._by_id.get(identifier)

    def is_known(self, identifier: str) -> bool:
        return identifier in self._by_id

    def all_permissions(self) -> List[Permission]:
        return list(self._by_id.values())

    def read_leaves(self) -> FrozenSet[str]:
        return self._read_leaves

    def write_leaves(self) -> FrozenSet[str]:
        return self._write_leaves

    def is_read_leaf(self, identifier: str) -> bool:
        return identifier in self._read_leaves

    def is_write_leaf(self, identifier: str) -> bool:
        return identifier in self._write_leaves

    def parameters_for(self, identifier: str) -> Tuple[str, ...]:
        permission = self._by_id.get(identifier)
        return permission.parameters if permission else ()


CATALOG = PermissionCatalog([_TREE])


class PermissionIds:
    """Identifiers referenced by the service layer."""

    PROFILE_READ = "api:user:profile:read"
    AUTH_ME = "api:auth:me"
    AUTH_REFRESH = "api:auth:refresh"
    AUTH_LOGOUT = "api:auth:logout"
    AUTH_UPGRADE = "api:auth:upgrade"
    SESSIONS_LIST = "api:auth:sessions:list"
    SESSIONS_REVOKE = "api:auth:sessions:revoke"
    SESSIONS_REVOKE_ALL = "api:auth:sessions:revoke_all"
    SESSIONS_WRITE = "api:auth:sessions:_write"
    API_KEYS_LIST = "api:auth:api_keys:list"
    API_KEYS_CREATE = "api:auth:api_keys:create"
    API_KEYS_REVOKE = "api:auth:api_keys:revoke"
    API_KEYS_READ = "api:auth:api_keys:_read"
    API_KEYS_WRITE = "api:auth:api_keys:_write"
    PASSKEYS_LIST = "api:auth:passkeys:list"
    PASSKEYS_REGISTER = "api:auth:passkeys:register"
    PASSKEYS_RENAME = "api:auth:passkeys:rename"
    PASSKEYS_DELETE = "api:auth:passkeys:delete"
    PASSKEYS_WRITE = "api:auth:passkeys:_write"


__all__ = [
    "AccessKind",
    "CATALOG",
    "PermissionIds",
    "Permission",
    "PermissionCatalog",
    "READ_SUFFIX",
    "ROOT_READ",
    "ROOT_WRITE",
    "WRITE_SUFFIX",
]
