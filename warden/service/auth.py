from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Protocol, Tuple

from warden.config import Settings
from warden.logging import get_logger, log_security_event
from warden.service.accounts import AccountService
from warden.service.api_keys import ApiKeyService
from warden.service.errors import (
    AccountStateViolation,
    AuthenticationError,
    NotFoundError,
    PermissionDenied,
    RefreshTokenInvalid,
)
from warden.service.locks import InProcessSessionLocks, SessionLocks
from warden.service.permissions import PermissionIds
from warden.service.roles import Role
from warden.service.scopes import ScopeDirective, has_permission, parse_scope
from warden.service.tokens import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_API_KEY,
    TokenCodec,
    TokenPair,
    claims_expiry,
    generate_refresh_token,
    hash_prefix,
    hash_token,
    looks_like_jwt,
)
from warden.storage.models import Account, ApiKey, PasskeyChallenge, PasskeyCredential, Session, UserSession

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_identity(self, provider: str, subject: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def list_stale_anonymous_accounts(self, cutoff: datetime) -> List[Account]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_code(self, code: str) -> Optional[Role]: ...

    def save_role(self, role: Role) -> Role: ...

    def delete_role(self, role_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_hash(self, token_hash: str) -> Optional[Session]: ...

    def save_session(self, session: Session) -> Session: ...

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, now: Optional[datetime] = None) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    def list_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: Optional[datetime] = None
    ) -> List[Session]: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge: ...

    def get_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]: ...

    def take_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]: ...

    def delete_passkey_challenge(self, challenge_id: str) -> bool: ...

    def delete_expired_passkey_challenges(self, now: Optional[datetime] = None) -> int: ...

    def save_passkey(self, credential: PasskeyCredential) -> PasskeyCredential: ...

    def get_passkey(self, passkey_id: str) -> Optional[PasskeyCredential]: ...

    def get_passkey_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]: ...

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]: ...

    def update_passkey_sign_count(
        self, passkey_id: str, expected_count: int, new_count: int, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_passkey(self, passkey_id: str) -> bool: ...

    def save_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def list_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def count_active_api_keys(self, user_id: str, now: Optional[datetime] = None) -> int: ...


@dataclass
class AuthContext:
    """Authenticated caller. ``scope`` is the snapshot captured at issuance."""

    user_id: str
    scope: List[ScopeDirective]
    token_type: str = TOKEN_TYPE_ACCESS
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    anonymous: bool = False
    expires_at: Optional[datetime] = None

    @property
    def is_api_key(self) -> bool:
        return self.token_type == TOKEN_TYPE_API_KEY

    def has_permission(self, permission: str, params: Optional[Mapping[str, str]] = None) -> bool:
        return has_permission(self.scope, permission, params)

    def require(self, permission: str, params: Optional[Mapping[str, str]] = None) -> None:
        if not self.has_permission(permission, params):
            logger.info(
                "permission_denied",
                user_id=self.user_id,
                permission=permission,
                token_type=self.token_type,
            )
            raise PermissionDenied(f"{permission} denied")


@dataclass(frozen=True)
class SessionView:
    id: str
    device_name: Optional[str]
    user_agent: Optional[str]
    ip_addr: Optional[str]
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool


class AuthService:
    """Session issuance, refresh-token rotation and bearer authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        accounts: AccountService,
        api_keys: ApiKeyService,
        *,
        locks: Optional[SessionLocks] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.accounts = accounts
        self.api_keys = api_keys
        self.locks = locks or InProcessSessionLocks(settings.session_lock_timeout_seconds)
        self.codec = codec or api_keys.codec
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""
        return datetime.now(timezone.utc)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # -- issuance ------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[Account, Session, TokenPair]:
        account = self.accounts.authenticate_password(identifier, password)
        return await self.issue_for_account(
            account, device_name=device_name, user_agent=user_agent, ip_addr=ip_addr
        )

    async def issue_for_account(
        self,
        account: Account,
        *,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Account, Session, TokenPair]:
        """Start a new session lineage for an already-verified account."""
        now = now or self._now()
        if not account.can_authenticate(now):
            raise AccountStateViolation(f"issue while {account.status.value}")
        raw_refresh = generate_refresh_token()
        session = self.store.create_session(
            Session.create(
                account.id,
                hash_token(raw_refresh),
                now + self.refresh_ttl,
                device_name=device_name,
                user_agent=user_agent,
                ip_addr=ip_addr,
                now=now,
            )
        )
        pair = self._issue_pair(account, session, raw_refresh, now)
        self.logger.info("session_created", user_id=account.id, session_id=session.id)
        return account, session, pair

    def build_user_session(
        self, account: Account, session_id: Optional[str], now: datetime
    ) -> UserSession:
        return UserSession(
            user_id=account.id,
            username=account.username,
            email=account.email,
            scope=tuple(self.accounts.resolve_scope(account)),
            roles=tuple(self.accounts.role_codes(account)),
            issued_at=now,
            expires_at=now + self.access_ttl,
            is_anonymous=account.is_anonymous,
            session_id=session_id,
        )

    def _issue_pair(
        self, account: Account, session: Session, raw_refresh: str, now: datetime
    ) -> TokenPair:
        snapshot = self.build_user_session(account, session.id, now)
        access = self.codec.issue(
            subject=snapshot.user_id,
            scope=snapshot.scope,
            issued_at=snapshot.issued_at,
            expires_at=snapshot.expires_at,
            token_type=TOKEN_TYPE_ACCESS,
            session_id=session.id,
            username=snapshot.username,
            email=snapshot.email,
            roles=snapshot.roles,
            anonymous=snapshot.is_anonymous,
        )
        return TokenPair(
            access_token=access,
            refresh_token=raw_refresh,
            token_type="bearer",
            access_expires_at=snapshot.expires_at,
            refresh_expires_at=session.expires_at,
            session_id=session.id,
        )

    # -- rotation ------------------------------------------------------

    async def refresh_tokens(
        self, refresh_token: str, *, now: Optional[datetime] = None
    ) -> Tuple[Account, Session, TokenPair]:
        """Rotate a refresh token.

        A token that was already superseded when the request arrived is
        treated as theft and the whole session is revoked. A duplicate of the
        current token that loses the rotation race is only rejected. Unknown,
        revoked and expired tokens fail without changing any state. Every
        failure surfaces as the same ``RefreshTokenInvalid``.
        """
        now = now or self._now()
        if not refresh_token or not refresh_token.strip():
            raise RefreshTokenInvalid("empty refresh token")
        if looks_like_jwt(refresh_token):
            self._reject_signed_token(refresh_token)

        presented = hash_token(refresh_token)
        session = self.store.find_session_by_hash(presented)
        if session is None:
            self.logger.info("refresh_token_unknown", token_hash_prefix=hash_prefix(presented))
            raise RefreshTokenInvalid("unknown refresh token")
        if session.revoked:
            self.logger.info("refresh_on_revoked_session", session_id=session.id)
            raise RefreshTokenInvalid("session revoked")
        if session.is_expired(now):
            self.logger.info("refresh_on_expired_session", session_id=session.id)
            raise RefreshTokenInvalid("session expired")

        new_refresh = generate_refresh_token()
        # The lock wait and store calls block, so they run off the event loop
        account, rotated = await asyncio.to_thread(
            self._rotate_locked, session, presented, hash_token(new_refresh), now
        )

        pair = self._issue_pair(account, rotated, new_refresh, now)
        self.logger.info(
            "refresh_token_rotated", session_id=rotated.id, generation=rotated.generation
        )
        return account, rotated, pair

    def _rotate_locked(
        self, seen: Session, presented: str, new_hash: str, now: datetime
    ) -> Tuple[Account, Session]:
        """Read-compare-rotate under the per-session lock.

        ``seen`` is the session as read before waiting for the lock. When the
        presented token was current at that read and has since been rotated
        exactly once, another request carrying the same token won the race;
        that is a duplicate, not a replay of a stale token.
        """
        with self.locks.hold(seen.id):
            current = self.store.get_session(seen.id)
            if current is None or current.revoked:
                raise RefreshTokenInvalid("session revoked")
            if current.is_expired(now):
                raise RefreshTokenInvalid("session expired")
            if current.refresh_token_hash != presented:
                if self._lost_inflight_race(seen, current, presented):
                    self.logger.info(
                        "refresh_token_race_lost",
                        session_id=current.id,
                        generation=current.generation,
                    )
                    raise RefreshTokenInvalid("rotated by a concurrent request with the same token")
                if self._within_reuse_grace(current, presented, now):
                    self.logger.info("refresh_token_retry_in_grace", session_id=current.id)
                    raise RefreshTokenInvalid("superseded token replayed within grace window")
                self.store.revoke_session(current.id, now)
                log_security_event(
                    "refresh_token_reuse_detected",
                    user_id=current.user_id,
                    session_id=current.id,
                    token_hash_prefix=hash_prefix(presented),
                    generation=current.generation,
                )
                raise RefreshTokenInvalid("superseded refresh token reused")
            account = self.store.get_account(current.user_id)
            if account is None or not account.can_authenticate(now):
                self.logger.info(
                    "refresh_account_not_permitted",
                    user_id=current.user_id,
                    session_id=current.id,
                )
                raise RefreshTokenInvalid("account cannot authenticate")
            rotated = self.store.rotate_session_hash(current.id, presented, new_hash, now + self.refresh_ttl, now)
            if rotated is None:
                # Lost a compare-and-swap to a writer outside this lock; not evidence of theft
                self.logger.warning("refresh_rotation_conflict", session_id=current.id)
                raise RefreshTokenInvalid("concurrent rotation")
            return account, rotated

    @staticmethod
    def _lost_inflight_race(seen: Session, current: Session, presented: str) -> bool:
        return (
            seen.refresh_token_hash == presented
            and current.previous_refresh_token_hash == presented
            and current.generation == seen.generation + 1
        )

    def _within_reuse_grace(self, session: Session, presented: str, now: datetime) -> bool:
        grace = self.settings.refresh_reuse_grace_seconds
        if grace <= 0 or session.rotated_at is None:
            return False
        if session.previous_refresh_token_hash != presented:
            return False
        return now - session.rotated_at <= timedelta(seconds=grace)

    def _reject_signed_token(self, token: str) -> None:
        payload = self.codec.decode(token)
        if payload is not None:
            sub = str(payload.get("sub", ""))
            allowed = has_permission(
                parse_scope(payload.get("scope") or []),
                PermissionIds.AUTH_REFRESH,
                {"userId": sub},
            )
            log_security_event(
                "refresh_with_signed_token",
                user_id=sub,
                token_type=payload.get("token_type"),
                scope_allows_refresh=allowed,
            )
        raise RefreshTokenInvalid("signed credential presented as refresh token")

    # -- session management --------------------------------------------

    async def logout(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, self._now())
        self.logger.info("session_logout", session_id=session_id, revoked=revoked)
        return revoked

    def list_sessions(self, user_id: str, current_session_id: Optional[str] = None) -> List[SessionView]:
        return [
            SessionView(
                id=s.id,
                device_name=s.device_name,
                user_agent=s.user_agent,
                ip_addr=s.ip_addr,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
                is_current=s.id == current_session_id,
            )
            for s in self.store.list_sessions(user_id, now=self._now())
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        revoked = self.store.revoke_session(session_id, self._now())
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id, revoked=revoked)
        return revoked

    async def revoke_all_sessions(self, user_id: str) -> int:
        """Revoke every session of the user, the caller's own included."""
        count = self.store.revoke_user_sessions(user_id, None, self._now())
        self.logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    async def revoke_other_sessions(self, user_id: str, keep_session_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id, keep_session_id, self._now())
        self.logger.info("sessions_revoked_others", user_id=user_id, count=count)
        return count

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        removed = self.store.delete_expired_sessions(now or self._now())
        if removed:
            self.logger.info("expired_sessions_deleted", count=removed)
        return removed

    # -- bearer authentication -----------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(
        self, authorization: Optional[str], *, now: Optional[datetime] = None
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("missing bearer token")
        return self.authenticate_token(token, now=now)

    def authenticate_token(self, token: str, *, now: Optional[datetime] = None) -> AuthContext:
        now = now or self._now()
        payload = self.codec.decode(token, now=now.timestamp())
        if payload is None:
            raise AuthenticationError("invalid or expired token")
        user_id = payload.get("sub")
        token_type = payload.get("token_type")
        if not user_id or token_type not in (TOKEN_TYPE_ACCESS, TOKEN_TYPE_API_KEY):
            raise AuthenticationError("invalid or expired token")

        session_id: Optional[str] = None
        api_key_id: Optional[str] = None
        if token_type == TOKEN_TYPE_ACCESS:
            session_id = payload.get("sid")
            session = self.store.get_session(session_id) if session_id else None
            if session is None or session.user_id != user_id or not session.is_active(now):
                raise AuthenticationError("session is no longer active")
        else:
            api_key_id = payload.get("jti")
            if not api_key_id or not self.api_keys.validate(api_key_id, user_id, now=now):
                raise AuthenticationError("api key is no longer valid")

        account = self.store.get_account(user_id)
        if account is None or not account.can_authenticate(now):
            raise AuthenticationError("account cannot authenticate")
        return self._context_from_claims(payload, session_id, api_key_id)

    def _context_from_claims(
        self, payload: dict[str, Any], session_id: Optional[str], api_key_id: Optional[str]
    ) -> AuthContext:
        return AuthContext(
            user_id=payload["sub"],
            scope=parse_scope(payload.get("scope") or []),
            token_type=payload["token_type"],
            session_id=session_id,
            api_key_id=api_key_id,
            username=payload.get("username"),
            email=payload.get("email"),
            roles=list(payload.get("roles") or []),
            anonymous=bool(payload.get("anonymous", False)),
            expires_at=claims_expiry(payload),
        )
