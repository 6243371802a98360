from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.permissions import PermissionIds
from warden.service.scopes import ScopeDirective, normalize_scope, serialize_scope

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_API_KEY = "api_key"
REFRESH_TOKEN_BYTES = 48


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 hex digest. Only digests of refresh tokens are ever persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_prefix(token_hash: Optional[str]) -> Optional[str]:
    return token_hash[:8] if token_hash else None


def looks_like_jwt(token: str) -> bool:
    return token.count(".") == 2


def refresh_deny_directive(user_id: str) -> ScopeDirective:
    return ScopeDirective.deny(PermissionIds.AUTH_REFRESH, userId=user_id)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


class TokenCodec:
    """HS256 signed bearer tokens carrying scope directives.

    Issued tokens always carry a deny on ``api:auth:refresh`` for their
    subject, so a signed token presented to the refresh endpoint can never
    pass its own scope check.
    """

    def __init__(self, settings: Settings, *, leeway: timedelta = timedelta(seconds=120)):
        self.settings = settings
        self.leeway = leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Verified payload, or ``None`` for anything malformed, forged or expired."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=getattr(header, "get", lambda _k: None)("alg"))
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        current = time.time() if now is None else now
        if exp_ts <= current - self.leeway.total_seconds():
            return None
        return payload

    def issue(
        self,
        *,
        subject: str,
        scope: Iterable[ScopeDirective],
        issued_at: datetime,
        expires_at: datetime,
        token_type: str = TOKEN_TYPE_ACCESS,
        session_id: Optional[str] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
        roles: Iterable[str] = (),
        anonymous: bool = False,
        jti: Optional[str] = None,
    ) -> str:
        directives = normalize_scope(list(scope) + [refresh_deny_directive(subject)])
        permissions: List[str] = sorted(
            {d.to_permission_identifier() for d in directives if d.is_allow}  # type: ignore[misc]
        )
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti or str(uuid.uuid4()),
            "token_type": token_type,
            "scope": serialize_scope(directives),
            "permissions": permissions,
            "roles": sorted(set(roles)),
            "anonymous": anonymous,
        }
        if session_id:
            payload["sid"] = session_id
        if username:
            payload["username"] = username
        if email:
            payload["email"] = email
        return self.encode(payload)


def claims_expiry(payload: dict[str, Any]) -> datetime:
    return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
