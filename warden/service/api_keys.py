from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger, log_security_event
from warden.service.errors import ValidationError
from warden.service.permissions import PermissionIds
from warden.service.scopes import ScopeDirective, normalize_scope, serialize_scope
from warden.service.tokens import TOKEN_TYPE_API_KEY, TokenCodec
from warden.storage.models import ApiKey

logger = get_logger(__name__)

API_KEY_NAME_MAX_LENGTH = 100

# Credential management stays out of reach of every API key, whatever the issuing scope allowed
RESTRICTED_PERMISSIONS = (
    PermissionIds.AUTH_REFRESH,
    PermissionIds.API_KEYS_READ,
    PermissionIds.API_KEYS_WRITE,
    PermissionIds.SESSIONS_WRITE,
    PermissionIds.PASSKEYS_WRITE,
)


def restricted_scope(scope: Iterable[ScopeDirective], user_id: str) -> List[ScopeDirective]:
    """Issuing scope plus user-bound denies for credential management."""
    denies = [ScopeDirective.deny(p, userId=user_id) for p in RESTRICTED_PERMISSIONS]
    return normalize_scope(list(scope) + denies)


class ApiKeyService:
    """Long-lived bearer credentials with a frozen, restricted scope."""

    def __init__(self, store, settings: Settings, codec: Optional[TokenCodec] = None) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec or TokenCodec(settings)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(
        self,
        user_id: str,
        scope: Iterable[ScopeDirective],
        name: str,
        expires_at: Optional[datetime] = None,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        roles: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Tuple[ApiKey, str]:
        """Mint a key. The raw credential is only ever returned here."""
        now = now or self._now()
        clean_name = (name or "").strip()
        if not clean_name or len(clean_name) > API_KEY_NAME_MAX_LENGTH:
            raise ValidationError(
                f"name must be 1-{API_KEY_NAME_MAX_LENGTH} characters", detail={"field": "name"}
            )
        if expires_at is None:
            expires_at = now + timedelta(days=self.settings.api_key_default_ttl_days)
        elif expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            raise ValidationError("expiry must be in the future", detail={"field": "expires_at"})
        active = self.store.count_active_api_keys(user_id, now)
        if active >= self.settings.api_key_max_per_user:
            raise ValidationError(
                f"at most {self.settings.api_key_max_per_user} active API keys are allowed",
                detail={"field": "name", "active": active},
            )

        directives = restricted_scope(scope, user_id)
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=clean_name,
            created_at=now,
            expires_at=expires_at,
            scope=tuple(serialize_scope(directives)),
        )
        self.store.save_api_key(api_key)
        raw = self.codec.issue(
            subject=user_id,
            scope=directives,
            issued_at=now,
            expires_at=expires_at,
            token_type=TOKEN_TYPE_API_KEY,
            username=username,
            email=email,
            roles=roles,
            jti=api_key.id,
        )
        logger.info("api_key_created", user_id=user_id, api_key_id=api_key.id)
        return api_key, raw

    def list(self, user_id: str) -> List[ApiKey]:
        return self.store.list_api_keys(user_id)

    def revoke(self, user_id: str, key_id: str) -> bool:
        """False for unknown, foreign and already revoked keys."""
        api_key = self.store.get_api_key(key_id)
        if api_key is None or api_key.user_id != user_id:
            return False
        if not api_key.revoke(self._now()):
            return False
        self.store.save_api_key(api_key)
        logger.info("api_key_revoked", user_id=user_id, api_key_id=key_id)
        return True

    def validate(self, key_id: str, user_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        api_key = self.store.get_api_key(key_id)
        if api_key is None or api_key.user_id != user_id:
            log_security_event("api_key_unknown", user_id=user_id, api_key_id=key_id)
            return False
        if not api_key.is_valid(now):
            logger.info(
                "api_key_rejected",
                api_key_id=key_id,
                revoked=api_key.revoked,
                expired=api_key.is_expired(now),
            )
            return False
        api_key.touch(now)
        self.store.save_api_key(api_key)
        return True
