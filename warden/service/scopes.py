"""Scope directives and the allow/deny evaluator.

A scope is an ordered collection of directives such as
``allow;_read;userId=42`` or ``deny;api:auth:refresh;userId=42``. Evaluation
is pure: no I/O, no clocks, no storage.

Precedence: any matching deny wins, at least one matching allow is required,
and no match at all is a deny.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from warden.service.permissions import (
    CATALOG,
    READ_SUFFIX,
    ROOT_READ,
    ROOT_WRITE,
    WRITE_SUFFIX,
    PermissionCatalog,
)


class DirectiveKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class ScopeDirective:
    kind: DirectiveKind
    path: str
    parameters: Tuple[Tuple[str, str], ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip():
            raise ValueError("scope directive path cannot be empty")
        if any(c in self.path for c in ";= "):
            raise ValueError(f"invalid scope directive path: {self.path!r}")
        # Parameters are kept sorted so equal directives compare and hash equal
        object.__setattr__(self, "parameters", tuple(sorted(self.parameters)))

    @classmethod
    def allow(cls, path: str, **params: str) -> "ScopeDirective":
        return cls(DirectiveKind.ALLOW, path, tuple((k, str(v)) for k, v in params.items()))

    @classmethod
    def deny(cls, path: str, **params: str) -> "ScopeDirective":
        return cls(DirectiveKind.DENY, path, tuple((k, str(v)) for k, v in params.items()))

    @classmethod
    def parse(cls, raw: str) -> "ScopeDirective":
        """Parse ``allow;path;key=value;...``. Raises ``ValueError`` when malformed."""
        if not raw or not raw.strip():
            raise ValueError("scope directive cannot be empty")
        parts = [part.strip() for part in raw.strip().split(";")]
        if len(parts) < 2:
            raise ValueError(f"scope directive needs a kind and a path: {raw!r}")
        try:
            kind = DirectiveKind(parts[0].lower())
        except ValueError as exc:
            raise ValueError(f"unknown scope directive kind: {parts[0]!r}") from exc
        params: Dict[str, str] = {}
        for part in parts[2:]:
            if not part:
                continue
            key, sep, value = part.partition("=")
            key = key.strip()
            if not sep or not key:
                raise ValueError(f"malformed scope parameter: {part!r}")
            if key in params:
                raise ValueError(f"duplicate scope parameter: {key!r}")
            params[key] = value.strip()
        return cls(kind, parts[1], tuple(params.items()))

    @classmethod
    def try_parse(cls, raw: str) -> Optional["ScopeDirective"]:
        try:
            return cls.parse(raw)
        except ValueError:
            return None

    @property
    def is_allow(self) -> bool:
        return self.kind is DirectiveKind.ALLOW

    @property
    def is_deny(self) -> bool:
        return self.kind is DirectiveKind.DENY

    def params(self) -> Dict[str, str]:
        return dict(self.parameters)

    def with_parameter(self, key: str, value: str) -> "ScopeDirective":
        merged = dict(self.parameters)
        merged[key] = str(value)
        return ScopeDirective(self.kind, self.path, tuple(merged.items()))

    def to_permission_identifier(self) -> Optional[str]:
        """Flat identifier for legacy consumers; deny directives have none."""
        return self.path if self.is_allow else None

    def __str__(self) -> str:
        segments = [self.kind.value, self.path]
        segments.extend(f"{k}={v}" for k, v in self.parameters)
        return ";".join(segments)


ScopeLike = Union[ScopeDirective, str]


def scope_from_permissions(identifiers: Iterable[str]) -> List[ScopeDirective]:
    """Legacy flat permission list -> unconditional allow directives."""
    return [ScopeDirective.allow(identifier.strip()) for identifier in identifiers if identifier and identifier.strip()]


def _coerce(scope: Optional[Iterable[ScopeLike]]) -> List[ScopeDirective]:
    if not scope:
        return []
    directives: List[ScopeDirective] = []
    for entry in scope:
        if isinstance(entry, ScopeDirective):
            directives.append(entry)
        elif isinstance(entry, str):
            # Directive strings carry a kind prefix; anything else is a legacy identifier
            parsed = ScopeDirective.try_parse(entry) if ";" in entry else None
            directives.append(parsed or ScopeDirective.allow(entry.strip()))
    return directives


def parse_scope(raw: Iterable[str]) -> List[ScopeDirective]:
    """Parse serialized directives, dropping anything malformed."""
    out: List[ScopeDirective] = []
    for entry in raw or ():
        directive = ScopeDirective.try_parse(entry)
        if directive is not None:
            out.append(directive)
    return out


def serialize_scope(scope: Iterable[ScopeDirective]) -> List[str]:
    return [str(d) for d in scope]


def normalize_scope(scope: Iterable[ScopeLike]) -> List[ScopeDirective]:
    """Deduplicate and sort deterministically so issued claims are reproducible."""
    unique = set(_coerce(scope))
    return sorted(unique, key=lambda d: (d.kind is DirectiveKind.ALLOW, d.path, d.parameters))


class ScopeEvaluator:
    """Decides whether a scope grants a permission for given request parameters."""

    def __init__(self, catalog: PermissionCatalog = CATALOG) -> None:
        self.catalog = catalog

    def path_matches(self, directive_path: str, requested: str) -> bool:
        if directive_path == requested:
            return True
        if directive_path == ROOT_READ:
            return requested.endswith(READ_SUFFIX) or self.catalog.is_read_leaf(requested)
        if directive_path == ROOT_WRITE:
            return requested.endswith(WRITE_SUFFIX) or self.catalog.is_write_leaf(requested)
        if requested.startswith(directive_path + ":"):
            return True
        if directive_path.endswith(READ_SUFFIX):
            parent = directive_path[: -len(READ_SUFFIX)]
            if requested.startswith(parent + ":"):
                return requested.endswith(READ_SUFFIX) or self.catalog.is_read_leaf(requested)
        if directive_path.endswith(WRITE_SUFFIX):
            parent = directive_path[: -len(WRITE_SUFFIX)]
            if requested.startswith(parent + ":"):
                return requested.endswith(WRITE_SUFFIX) or self.catalog.is_write_leaf(requested)
        return False

    def directive_matches(
        self,
        directive: ScopeDirective,
        requested: str,
        params: Optional[Mapping[str, str]],
    ) -> bool:
        if not self.path_matches(directive.path, requested):
            return False
        if not directive.parameters:
            return True
        params = params or {}
        for key, value in directive.parameters:
            if key not in params:
                # An allow must be satisfied; a deny applies unless contradicted
                if directive.is_allow:
                    return False
                continue
            if str(params[key]) != value:
                return False
        return True

    def has_permission(
        self,
        scope: Optional[Iterable[ScopeLike]],
        permission: str,
        params: Optional[Mapping[str, str]] = None,
    ) -> bool:
        if not permission or not permission.strip():
            return False
        directives = _coerce(scope)
        allowed = False
        for directive in directives:
            if not self.directive_matches(directive, permission, params):
                continue
            if directive.is_deny:
                return False
            allowed = True
        return allowed

    def has_any_permission(
        self,
        scope: Optional[Iterable[ScopeLike]],
        permissions: Sequence[str],
        params: Optional[Mapping[str, str]] = None,
    ) -> bool:
        directives = _coerce(scope)
        return any(self.has_permission(directives, p, params) for p in permissions or ())

    def has_all_permissions(
        self,
        scope: Optional[Iterable[ScopeLike]],
        permissions: Sequence[str],
        params: Optional[Mapping[str, str]] = None,
    ) -> bool:
        wanted = [p for p in permissions or () if p and p.strip()]
        if not wanted:
            return False
        directives = _coerce(scope)
        return all(self.has_permission(directives, p, params) for p in wanted)

    def get_parameters(
        self,
        scope: Optional[Iterable[ScopeLike]],
        permission: str,
        params: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """Bound parameters of the first satisfied allow-match, or ``{}``.

        Callers use this to constrain their own data access, e.g. to the
        ``userId`` the grant was issued for.
        """
        if not self.has_permission(scope, permission, params):
            return {}
        for directive in _coerce(scope):
            if directive.is_allow and self.directive_matches(directive, permission, params):
                return directive.params()
        return {}


_default_evaluator = ScopeEvaluator()


def has_permission(
    scope: Optional[Iterable[ScopeLike]],
    permission: str,
    params: Optional[Mapping[str, str]] = None,
) -> bool:
    return _default_evaluator.has_permission(scope, permission, params)


def has_any_permission(
    scope: Optional[Iterable[ScopeLike]],
    permissions: Sequence[str],
    params: Optional[Mapping[str, str]] = None,
) -> bool:
    return _default_evaluator.has_any_permission(scope, permissions, params)


def has_all_permissions(
    scope: Optional[Iterable[ScopeLike]],
    permissions: Sequence[str],
    params: Optional[Mapping[str, str]] = None,
) -> bool:
    return _default_evaluator.has_all_permissions(scope, permissions, params)


def get_parameters(
    scope: Optional[Iterable[ScopeLike]],
    permission: str,
    params: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    return _default_evaluator.get_parameters(scope, permission, params)
