from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger, log_security_event
from warden.service.errors import (
    AccountStateViolation,
    ConflictError,
    InvalidCredential,
    NotFoundError,
    ValidationError,
)
from warden.service.roles import USER_ROLE_ID, Role
from warden.service.scopes import ScopeDirective
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account

logger = get_logger(__name__)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 64
PASSWORD_MIN_LENGTH = 8
_USERNAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountService:
    """Registration, password login and administrative account transitions."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        on_sessions_revoked: Optional[Callable[[str], int]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Hash of a random value, verified against when the login name is unknown
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._revoke_sessions = on_sessions_revoked or (
            lambda user_id: self.store.revoke_user_sessions(user_id)
        )
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_minutes)

    # -- validation ----------------------------------------------------

    def _validate_username(self, username: str) -> str:
        normalized = Account.normalize_username(username or "")
        if not USERNAME_MIN_LENGTH <= len(normalized) <= USERNAME_MAX_LENGTH:
            raise ValidationError(
                f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters",
                detail={"field": "username"},
            )
        if not _USERNAME_PATTERN.match(normalized):
            raise ValidationError(
                "username may contain letters, digits, '.', '_' and '-'",
                detail={"field": "username"},
            )
        return normalized

    def _validate_email(self, email: Optional[str]) -> Optional[str]:
        normalized = Account.normalize_email(email)
        if normalized is not None and not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"password must be at least {PASSWORD_MIN_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _save(self, account: Account) -> Account:
        try:
            return self.store.save_account(account)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail={"field": exc.field}) from exc

    # -- registration --------------------------------------------------

    def register(self, username: str, password: str, email: Optional[str] = None) -> Account:
        normalized = self._validate_username(username)
        normalized_email = self._validate_email(email)
        self._validate_password(password)
        if self.store.get_account_by_username(normalized):
            raise ConflictError("username already exists", detail={"field": "username"})
        if normalized_email and self.store.get_account_by_email(normalized_email):
            raise ConflictError("email already exists", detail={"field": "email"})
        account = Account.register(normalized, normalized_email, now=self._now())
        account.set_password_hash(self._hash_password(password))
        account.assign_role(USER_ROLE_ID)
        saved = self._save(account)
        self.logger.info("account_registered", user_id=saved.id, username=saved.username)
        return saved

    def register_anonymous(self) -> Account:
        """Create an active guest account with the USER role and no credentials.

        The caller issues tokens for it right away; the ``anonymous`` claim
        tells clients to offer an upgrade.
        """
        now = self._now()
        account = Account.register(None, is_anonymous=True, now=now)
        account.assign_role(USER_ROLE_ID)
        account.activate()
        account.record_successful_login(now)
        saved = self._save(account)
        self.logger.info("account_registered_anonymous", user_id=saved.id)
        return saved

    def upgrade_anonymous(
        self, user_id: str, username: str, password: str, email: Optional[str] = None
    ) -> Account:
        """Give a guest account a name and password, keeping its id and grants."""
        normalized = self._validate_username(username)
        normalized_email = self._validate_email(email)
        self._validate_password(password)
        account = self.get(user_id)
        if self.store.get_account_by_username(normalized):
            raise ConflictError("username already exists", detail={"field": "username"})
        account.upgrade_from_anonymous(normalized)
        if normalized_email:
            account.email = normalized_email
        account.set_password_hash(self._hash_password(password))
        saved = self._save(account)
        self.logger.info("account_upgraded", user_id=user_id, method="password")
        return saved

    def upgrade_anonymous_with_credential(self, user_id: str, method: str) -> Optional[Account]:
        """Clear the guest flag once a passkey or external identity is bound.

        Returns None for accounts that were never anonymous.
        """
        account = self.get(user_id)
        if not account.is_anonymous:
            return None
        account.upgrade_from_anonymous()
        saved = self._save(account)
        self.logger.info("account_upgraded", user_id=user_id, method=method)
        return saved

    def register_external(
        self,
        provider: str,
        subject: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        """Find or create the account linked to an external identity."""
        existing = self.store.get_account_by_identity(provider, subject)
        if existing is not None:
            return existing
        base = username or (email.split("@", 1)[0] if email else f"{provider}_{subject}")
        normalized = self._validate_username(re.sub(r"[^a-z0-9._-]", "_", base.strip().lower())[:USERNAME_MAX_LENGTH])
        if self.store.get_account_by_username(normalized):
            normalized = f"{normalized[: USERNAME_MAX_LENGTH - 9]}_{secrets.token_hex(4)}"
        account = Account.register(normalized, self._validate_email(email), now=self._now())
        account.link_identity(provider, subject, email, now=self._now())
        account.assign_role(USER_ROLE_ID)
        saved = self._save(account)
        self.logger.info("account_registered_external", user_id=saved.id, provider=provider)
        return saved

    # -- login ---------------------------------------------------------

    def find_for_login(self, identifier: str) -> Optional[Account]:
        if not identifier or not identifier.strip():
            return None
        account = self.store.get_account_by_username(identifier)
        if account is None and "@" in identifier:
            account = self.store.get_account_by_email(identifier)
        return account

    def authenticate_password(
        self, identifier: str, password: str, now: Optional[datetime] = None
    ) -> Account:
        """Verify a password login and record the outcome on the account.

        Unknown names, password-less accounts and wrong passwords all raise
        the same ``InvalidCredential``.
        """
        now = now or self._now()
        account = self.find_for_login(identifier)
        if account is None or not account.password_hash:
            self._verify_hash(self._dummy_hash, password or "")
            log_security_event("login_failed", reason="unknown_account")
            raise InvalidCredential("unknown account or no password")
        if not account.can_authenticate(now):
            log_security_event("login_blocked", user_id=account.id, status=account.status.value)
            raise AccountStateViolation(f"login while {account.status.value}")
        if not self._verify_hash(account.password_hash, password or ""):
            locked = account.record_failed_login(
                now, self.settings.lockout_threshold, self.lockout_duration
            )
            self._save(account)
            log_security_event(
                "login_failed",
                user_id=account.id,
                reason="bad_password",
                failed_count=account.failed_login_count,
                locked=locked,
            )
            raise InvalidCredential("password mismatch")
        account.record_successful_login(now)
        if self._pwd_hasher.check_needs_rehash(account.password_hash):
            account.set_password_hash(self._hash_password(password))
        self._save(account)
        self.logger.info("login_succeeded", user_id=account.id)
        return account

    def change_password(self, user_id: str, current_password: str, new_password: str) -> Account:
        account = self.get(user_id)
        if not account.password_hash or not self._verify_hash(account.password_hash, current_password):
            raise InvalidCredential("current password mismatch")
        self._validate_password(new_password)
        account.set_password_hash(self._hash_password(new_password))
        saved = self._save(account)
        self.logger.info("password_changed", user_id=user_id)
        return saved

    # -- administration ------------------------------------------------

    def get(self, user_id: str) -> Account:
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError("account not found", detail={"user_id": user_id})
        return account

    def activate(self, user_id: str) -> Account:
        account = self.get(user_id)
        account.activate()
        return self._save(account)

    def lock(self, user_id: str, minutes: Optional[int] = None) -> Account:
        account = self.get(user_id)
        duration = timedelta(minutes=minutes) if minutes else self.lockout_duration
        account.lock(self._now() + duration)
        saved = self._save(account)
        log_security_event("account_locked", user_id=user_id, by="admin")
        return saved

    def unlock(self, user_id: str) -> Account:
        account = self.get(user_id)
        account.unlock()
        return self._save(account)

    def suspend(self, user_id: str) -> Account:
        account = self.get(user_id)
        account.suspend()
        saved = self._save(account)
        revoked = self._revoke_sessions(user_id)
        log_security_event("account_suspended", user_id=user_id, sessions_revoked=revoked)
        return saved

    def deactivate(self, user_id: str) -> Account:
        account = self.get(user_id)
        account.deactivate()
        saved = self._save(account)
        revoked = self._revoke_sessions(user_id)
        log_security_event("account_deactivated", user_id=user_id, sessions_revoked=revoked)
        return saved

    def link_identity(
        self, user_id: str, provider: str, subject: str, email: Optional[str] = None
    ) -> Account:
        account = self.get(user_id)
        account.link_identity(provider, subject, email, now=self._now())
        upgraded = account.is_anonymous
        if upgraded:
            account.upgrade_from_anonymous()
        saved = self._save(account)
        if upgraded:
            self.logger.info("account_upgraded", user_id=user_id, method="identity")
        return saved

    def deactivate_stale_anonymous(self, now: Optional[datetime] = None) -> int:
        """Deactivate guest accounts idle longer than the retention window."""
        if not self.settings.anonymous_retention_days:
            return 0
        now = now or self._now()
        cutoff = now - timedelta(days=self.settings.anonymous_retention_days)
        swept = 0
        for account in self.store.list_stale_anonymous_accounts(cutoff):
            account.deactivate()
            self._save(account)
            self._revoke_sessions(account.id)
            swept += 1
        if swept:
            self.logger.info("anonymous_accounts_deactivated", count=swept)
        return swept

    def assign_role(
        self, user_id: str, role_code: str, bindings: Optional[Dict[str, str]] = None
    ) -> Account:
        role = self.store.get_role_by_code(role_code)
        if role is None:
            raise NotFoundError("role not found", detail={"role": role_code})
        account = self.get(user_id)
        account.assign_role(role.id, bindings)
        return self._save(account)

    def unassign_role(self, user_id: str, role_code: str) -> Account:
        role = self.store.get_role_by_code(role_code)
        if role is None:
            raise NotFoundError("role not found", detail={"role": role_code})
        account = self.get(user_id)
        account.unassign_role(role.id)
        return self._save(account)

    def grant_permission(self, user_id: str, directive: str) -> Account:
        parsed = ScopeDirective.try_parse(directive) if ";" in directive else None
        if parsed is None and ";" in directive:
            raise ValidationError("malformed scope directive", detail={"field": "directive"})
        account = self.get(user_id)
        account.grant_permission(parsed or directive)
        return self._save(account)

    def revoke_permission(self, user_id: str, path: str) -> Account:
        account = self.get(user_id)
        account.revoke_permission(path)
        return self._save(account)

    # -- scope ---------------------------------------------------------

    def role_resolver(self, role_id: str) -> Optional[Role]:
        return self.store.get_role(role_id)

    def resolve_scope(self, account: Account) -> List[ScopeDirective]:
        return account.build_effective_scope(self.role_resolver)

    def role_codes(self, account: Account) -> List[str]:
        codes = []
        for role_id in account.role_ids():
            role = self.store.get_role(role_id)
            if role is not None:
                codes.append(role.code)
        return sorted(codes)
