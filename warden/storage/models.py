from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from warden.service.errors import AccountStateViolation, InvalidCredential, ValidationError
from warden.service.roles import (
    ROLE_USER_ID_PARAM,
    RoleAssignment,
    RoleResolver,
    resolve_assignments,
)
from warden.service.scopes import ScopeDirective, normalize_scope


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    LOCKED = "locked"
    DEACTIVATED = "deactivated"


DEFAULT_LOCKOUT_THRESHOLD = 5
DEFAULT_LOCKOUT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class IdentityLink:
    provider: str
    subject: str
    email: Optional[str] = None
    linked_at: Optional[datetime] = None


@dataclass
class Account:
    """Account aggregate: credential material, lockout state and grants.

    Uniqueness of username, normalized email and identity links is enforced
    by the store. Collections are owned here and only handed out as
    snapshots.
    """

    id: str
    username: Optional[str]
    email: Optional[str] = None
    email_verified: bool = False
    password_hash: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING_ACTIVATION
    locked_until: Optional[datetime] = None
    failed_login_count: int = 0
    must_reset_password: bool = False
    is_anonymous: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    _grants: Set[ScopeDirective] = field(default_factory=set, init=False, repr=False)
    _roles: Set[RoleAssignment] = field(default_factory=set, init=False, repr=False)
    _links: Dict[Tuple[str, str], IdentityLink] = field(default_factory=dict, init=False, repr=False)

    @staticmethod
    def normalize_username(username: str) -> str:
        return username.strip().lower()

    @staticmethod
    def normalize_email(email: Optional[str]) -> Optional[str]:
        if email is None:
            return None
        cleaned = email.strip().lower()
        return cleaned or None

    @classmethod
    def register(
        cls,
        username: Optional[str],
        email: Optional[str] = None,
        *,
        is_anonymous: bool = False,
        now: Optional[datetime] = None,
    ) -> "Account":
        if not is_anonymous and (not username or not username.strip()):
            raise ValidationError("username is required", detail={"field": "username"})
        return cls(
            id=str(uuid.uuid4()),
            username=cls.normalize_username(username) if username else None,
            email=cls.normalize_email(email),
            is_anonymous=is_anonymous,
            created_at=now or utcnow(),
        )

    @classmethod
    def reconstruct(
        cls,
        *,
        grants: Iterable[str] = (),
        role_assignments: Iterable[RoleAssignment] = (),
        identity_links: Iterable[IdentityLink] = (),
        **fields,
    ) -> "Account":
        """Rebuild an account from persisted fields."""
        account = cls(**fields)
        account.status = AccountStatus(account.status)
        for raw in grants:
            directive = ScopeDirective.try_parse(raw)
            if directive is not None:
                account._grants.add(directive)
        account._roles.update(role_assignments)
        for link in identity_links:
            account._links[(link.provider, link.subject)] = link
        return account

    # -- state machine -------------------------------------------------

    def can_authenticate(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.status in (AccountStatus.DEACTIVATED, AccountStatus.SUSPENDED):
            return False
        if self.status is AccountStatus.LOCKED:
            return self.locked_until is not None and now >= self.locked_until
        return True

    def record_failed_login(
        self,
        now: Optional[datetime] = None,
        threshold: int = DEFAULT_LOCKOUT_THRESHOLD,
        lockout: timedelta = DEFAULT_LOCKOUT_DURATION,
    ) -> bool:
        """Count a failed attempt; returns True when this attempt locked the account.

        The counter starts over whenever a lock is applied, so an expired lock
        gives the full threshold of attempts again.
        """
        self._ensure_not(AccountStatus.DEACTIVATED, AccountStatus.SUSPENDED, action="record_failed_login")
        now = now or utcnow()
        if self.status is AccountStatus.LOCKED and self.can_authenticate(now):
            self.unlock()
        self.failed_login_count += 1
        self.last_failed_login_at = now
        if self.failed_login_count >= threshold:
            self.status = AccountStatus.LOCKED
            self.locked_until = now + lockout
            self.failed_login_count = 0
            return True
        return False

    def record_successful_login(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        if not self.can_authenticate(now):
            raise AccountStateViolation(f"login while {self.status.value}")
        self.failed_login_count = 0
        self.locked_until = None
        self.must_reset_password = False
        if self.status in (AccountStatus.PENDING_ACTIVATION, AccountStatus.LOCKED):
            self.status = AccountStatus.ACTIVE
        self.last_login_at = now

    def activate(self) -> None:
        if self.status is AccountStatus.ACTIVE:
            return
        if self.status is not AccountStatus.PENDING_ACTIVATION:
            raise self._illegal("activate")
        self.status = AccountStatus.ACTIVE

    def lock(self, until: datetime) -> None:
        self._ensure_not(AccountStatus.DEACTIVATED, AccountStatus.SUSPENDED, action="lock")
        self.status = AccountStatus.LOCKED
        self.locked_until = until

    def unlock(self) -> None:
        if self.status is not AccountStatus.LOCKED:
            return
        self.status = AccountStatus.ACTIVE
        self.locked_until = None
        self.failed_login_count = 0

    def suspend(self) -> None:
        if self.status is AccountStatus.SUSPENDED:
            return
        self._ensure_not(AccountStatus.DEACTIVATED, action="suspend")
        self.status = AccountStatus.SUSPENDED
        self.locked_until = None

    def deactivate(self) -> None:
        self._ensure_not(AccountStatus.DEACTIVATED, action="deactivate")
        self.status = AccountStatus.DEACTIVATED
        self.locked_until = None

    def set_password_hash(self, password_hash: Optional[str]) -> None:
        self._ensure_not(AccountStatus.DEACTIVATED, action="set_password")
        self.password_hash = password_hash

    def require_password_reset(self) -> None:
        self.must_reset_password = True

    def upgrade_from_anonymous(self, username: Optional[str] = None) -> None:
        """Turn a guest account into a regular one.

        A passkey or external identity can upgrade without a name; the
        account then keeps ``username=None`` until one is chosen.
        """
        if not self.is_anonymous:
            raise ValidationError("account is not anonymous")
        self._ensure_not(AccountStatus.DEACTIVATED, action="upgrade")
        if username is not None:
            if not username.strip():
                raise ValidationError("username is required", detail={"field": "username"})
            self.username = self.normalize_username(username)
        self.is_anonymous = False

    def _ensure_not(self, *statuses: AccountStatus, action: str) -> None:
        if self.status in statuses:
            raise self._illegal(action)

    def _illegal(self, action: str) -> AccountStateViolation:
        return AccountStateViolation(
            f"{action} not allowed from {self.status.value}",
            status_code=409,
            error_code="conflict",
            detail={"status": self.status.value},
        )

    # -- grants, roles, identity links ---------------------------------

    def permissions(self) -> List[str]:
        return sorted(str(d) for d in self._grants)

    def grant_permission(self, directive: ScopeDirective | str) -> bool:
        if isinstance(directive, str):
            directive = ScopeDirective.try_parse(directive) or ScopeDirective.allow(directive.strip())
        if directive in self._grants:
            return False
        self._grants.add(directive)
        return True

    def revoke_permission(self, path: str) -> bool:
        canonical = path.strip()
        before = len(self._grants)
        self._grants = {d for d in self._grants if d.path != canonical}
        return len(self._grants) != before

    def role_assignments(self) -> List[RoleAssignment]:
        return sorted(self._roles, key=lambda a: (a.role_id, a.bindings))

    def role_ids(self) -> List[str]:
        return sorted({a.role_id for a in self._roles})

    def assign_role(self, role_id: str, bindings: Optional[Dict[str, Optional[str]]] = None) -> bool:
        assignment = RoleAssignment.create(role_id, bindings)
        if assignment in self._roles:
            return False
        self._roles.add(assignment)
        return True

    def unassign_role(self, role_id: str) -> bool:
        before = len(self._roles)
        self._roles = {a for a in self._roles if a.role_id != role_id}
        return len(self._roles) != before

    def identity_links(self) -> List[IdentityLink]:
        return sorted(self._links.values(), key=lambda link: (link.provider, link.subject))

    def link_identity(
        self,
        provider: str,
        subject: str,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if not provider or not provider.strip() or not subject or not subject.strip():
            raise ValidationError("provider and subject are required")
        key = (provider.strip().lower(), subject.strip())
        if key in self._links:
            return False
        self._links[key] = IdentityLink(key[0], key[1], self.normalize_email(email), now or utcnow())
        return True

    def unlink_identity(self, provider: str, subject: str) -> bool:
        return self._links.pop((provider.strip().lower(), subject.strip()), None) is not None

    def build_effective_scope(self, resolver: RoleResolver) -> List[ScopeDirective]:
        """Direct grants plus every assigned role, deduplicated and sorted."""
        directives: List[ScopeDirective] = list(self._grants)
        directives.extend(
            resolve_assignments(
                self._roles, resolver, default_bindings={ROLE_USER_ID_PARAM: self.id}
            )
        )
        return normalize_scope(directives)


@dataclass
class Session:
    """One login's refresh-token lineage. Only hashes are stored."""

    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked_at: Optional[datetime] = None
    previous_refresh_token_hash: Optional[str] = None
    rotated_at: Optional[datetime] = None
    generation: int = 0

    @classmethod
    def create(
        cls,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        *,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            last_used_at=now,
            expires_at=expires_at,
            device_name=device_name,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    @classmethod
    def reconstruct(cls, **fields) -> "Session":
        return cls(**fields)

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def rotate_refresh_token(
        self, new_hash: str, new_expires_at: datetime, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        self.previous_refresh_token_hash = self.refresh_token_hash
        self.refresh_token_hash = new_hash
        self.expires_at = new_expires_at
        self.last_used_at = now
        self.rotated_at = now
        self.generation += 1

    def revoke(self, now: Optional[datetime] = None) -> bool:
        """Idempotent; returns True only on the first call."""
        if self.revoked_at is not None:
            return False
        self.revoked_at = now or utcnow()
        return True


@dataclass(frozen=True)
class UserSession:
    """Issuance-time snapshot from which access claims are derived."""

    user_id: str
    username: Optional[str]
    email: Optional[str]
    scope: Tuple[ScopeDirective, ...]
    roles: Tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    is_anonymous: bool = False
    session_id: Optional[str] = None

    @property
    def permissions(self) -> List[str]:
        return sorted({d.path for d in self.scope if d.is_allow})


class PasskeyChallengeType(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


DEFAULT_CHALLENGE_LIFETIME = timedelta(minutes=5)


@dataclass
class PasskeyChallenge:
    id: str
    challenge: bytes
    user_id: Optional[str]
    type: PasskeyChallengeType
    options_json: str
    credential_name: Optional[str]
    created_at: datetime
    expires_at: datetime

    @classmethod
    def create(
        cls,
        challenge: bytes,
        user_id: Optional[str],
        type: PasskeyChallengeType,
        options_json: str,
        credential_name: Optional[str] = None,
        *,
        lifetime: timedelta = DEFAULT_CHALLENGE_LIFETIME,
        now: Optional[datetime] = None,
    ) -> "PasskeyChallenge":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            challenge=challenge,
            user_id=user_id,
            type=type,
            options_json=options_json,
            credential_name=credential_name,
            created_at=now,
            expires_at=now + lifetime,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid_for(
        self,
        user_id: Optional[str],
        type: PasskeyChallengeType,
        now: Optional[datetime] = None,
    ) -> bool:
        if self.is_expired(now):
            return False
        if self.type is not type:
            return False
        # A registration challenge obtained by one account cannot enrol a key for another
        if type is PasskeyChallengeType.REGISTRATION and self.user_id != user_id:
            return False
        return True


@dataclass
class PasskeyCredential:
    id: str
    user_id: str
    name: str
    credential_id: bytes
    public_key: bytes
    sign_count: int
    aaguid: str
    user_handle: bytes
    attestation_format: str = "none"
    credential_type: str = "public-key"
    registered_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: str,
        name: Optional[str],
        credential_id: bytes,
        public_key: bytes,
        sign_count: int,
        aaguid: str,
        user_handle: bytes,
        attestation_format: str = "none",
        *,
        now: Optional[datetime] = None,
    ) -> "PasskeyCredential":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=(name or "").strip() or "My Passkey",
            credential_id=credential_id,
            public_key=public_key,
            sign_count=sign_count,
            aaguid=aaguid,
            user_handle=user_handle,
            attestation_format=attestation_format or "none",
            registered_at=now or utcnow(),
        )

    def record_use(self, presented_count: int, now: Optional[datetime] = None) -> None:
        """Accept a strictly increasing counter; anything else suggests a cloned authenticator."""
        if presented_count <= self.sign_count:
            raise InvalidCredential(
                f"signature counter regression {presented_count} <= {self.sign_count}"
            )
        self.sign_count = presented_count
        self.last_used_at = now or utcnow()

    def rename(self, name: str) -> None:
        if not name or not name.strip():
            raise ValidationError("name cannot be empty", detail={"field": "name"})
        if len(name.strip()) > 100:
            raise ValidationError("name is too long", detail={"field": "name"})
        self.name = name.strip()


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    created_at: datetime
    expires_at: datetime
    scope: Tuple[str, ...] = ()
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def revoke(self, now: Optional[datetime] = None) -> bool:
        if self.revoked_at is not None:
            return False
        self.revoked_at = now or utcnow()
        return True

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_used_at = now or utcnow()
