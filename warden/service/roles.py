from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from warden.logging import get_logger
from warden.service.errors import ValidationError
from warden.service.permissions import ROOT_READ, ROOT_WRITE
from warden.service.scopes import DirectiveKind, ScopeDirective

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([a-zA-Z0-9_]+)\}")
_SEPARATORS = re.compile(r"[;=]")

ADMIN_ROLE_ID = "00000000-0000-0000-0000-000000000001"
USER_ROLE_ID = "00000000-0000-0000-0000-000000000002"
ROLE_USER_ID_PARAM = "roleUserId"


@dataclass(frozen=True)
class RoleTemplate:
    """A directive whose parameter values may contain ``{placeholder}`` markers."""

    kind: DirectiveKind
    path: str
    parameters: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def allow(cls, path: str, **params: str) -> "RoleTemplate":
        return cls(DirectiveKind.ALLOW, path.strip(), tuple(params.items()))

    @classmethod
    def deny(cls, path: str, **params: str) -> "RoleTemplate":
        return cls(DirectiveKind.DENY, path.strip(), tuple(params.items()))

    @classmethod
    def parse(cls, raw: str) -> "RoleTemplate":
        # Same wire format as a directive; placeholders survive parsing as text
        directive = ScopeDirective.parse(raw)
        return cls(directive.kind, directive.path, directive.parameters)

    def required_parameters(self) -> List[str]:
        names: List[str] = []
        for _, value in self.parameters:
            for name in _PLACEHOLDER.findall(value):
                if name not in names:
                    names.append(name)
        return names

    def expand(self, bindings: Optional[Mapping[str, Optional[str]]]) -> Optional[ScopeDirective]:
        """Substitute placeholders; ``None`` when any required value is unbound."""
        bindings = bindings or {}
        missing = [name for name in self.required_parameters() if not bindings.get(name)]
        if missing:
            return None
        expanded = tuple(
            (key, _PLACEHOLDER.sub(lambda m: str(bindings[m.group(1)]), value))
            for key, value in self.parameters
        )
        return ScopeDirective(self.kind, self.path, expanded)

    def __str__(self) -> str:
        segments = [self.kind.value, self.path]
        segments.extend(f"{k}={v}" for k, v in self.parameters)
        return ";".join(segments)


@dataclass
class Role:
    id: str
    code: str
    name: str
    description: Optional[str] = None
    is_system: bool = False
    templates: List[RoleTemplate] = field(default_factory=list)

    def required_parameters(self) -> List[str]:
        names: List[str] = []
        for template in self.templates:
            for name in template.required_parameters():
                if name not in names:
                    names.append(name)
        return names


def expand_role(role: Role, bindings: Optional[Mapping[str, Optional[str]]] = None) -> List[ScopeDirective]:
    """Expand a role into concrete directives.

    Templates with an unresolved placeholder contribute nothing (fail-safe):
    a role scoped to ``{ownerId}`` with no owner bound grants no access
    through that template rather than broad access.
    """
    directives: List[ScopeDirective] = []
    for template in role.templates:
        directive = template.expand(bindings)
        if directive is None:
            logger.debug(
                "role_template_skipped",
                role_code=role.code,
                template=str(template),
                missing=template.required_parameters(),
            )
            continue
        directives.append(directive)
    return directives


@dataclass(frozen=True)
class RoleAssignment:
    role_id: str
    bindings: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def create(cls, role_id: str, bindings: Optional[Mapping[str, Optional[str]]] = None) -> "RoleAssignment":
        """Bindings with a ``None`` value are dropped.

        Bound values end up inside directive parameters, so keys and values
        may not contain the ``;`` or ``=`` separators.
        """
        clean = []
        for key, value in (bindings or {}).items():
            if value is None:
                continue
            text = str(value).strip()
            if not key or not text or _SEPARATORS.search(key) or _SEPARATORS.search(text):
                raise ValidationError(
                    "role binding keys and values must be non-empty and free of ';' and '='",
                    detail={"field": "bindings", "binding": key},
                )
            clean.append((key, text))
        return cls(role_id, tuple(sorted(clean)))

    def params(self) -> Dict[str, str]:
        return dict(self.bindings)


def system_roles() -> List[Role]:
    return [
        Role(
            id=ADMIN_ROLE_ID,
            code="ADMIN",
            name="Administrator",
            description="Full read and write access to every operation.",
            is_system=True,
            templates=[RoleTemplate.allow(ROOT_READ), RoleTemplate.allow(ROOT_WRITE)],
        ),
        Role(
            id=USER_ROLE_ID,
            code="USER",
            name="User",
            description="Read and write access to the user's own resources.",
            is_system=True,
            templates=[
                RoleTemplate.allow(ROOT_READ, userId="{%s}" % ROLE_USER_ID_PARAM),
                RoleTemplate.allow(ROOT_WRITE, userId="{%s}" % ROLE_USER_ID_PARAM),
            ],
        ),
    ]


RoleResolver = Callable[[str], Optional[Role]]


def resolve_assignments(
    assignments: Iterable[RoleAssignment],
    resolver: RoleResolver,
    *,
    default_bindings: Optional[Mapping[str, str]] = None,
) -> List[ScopeDirective]:
    """Expand every assigned role. Unknown role ids are skipped and logged."""
    directives: List[ScopeDirective] = []
    for assignment in assignments:
        role = resolver(assignment.role_id)
        if role is None:
            logger.warning("role_assignment_unknown_role", role_id=assignment.role_id)
            continue
        bindings: Dict[str, str] = dict(default_bindings or {})
        bindings.update(assignment.params())
        directives.extend(expand_role(role, bindings))
    return directives


def ensure_system_roles(store) -> int:
    """Seed the built-in roles. Idempotent; returns how many were created."""
    created = 0
    for role in system_roles():
        if store.get_role(role.id) is None:
            store.save_role(role)
            created += 1
    if created:
        logger.info("system_roles_seeded", created=created)
    return created
