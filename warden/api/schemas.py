from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_correlation_id
from warden.service.scopes import ScopeDirective

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "session_busy",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    # Same value as the X-Request-ID header when set inside a request.
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_scope_strings(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    for raw in values:
        if ScopeDirective.try_parse(raw) is None:
            raise ValueError(f"invalid scope directive '{raw}'")
    return values


# -- accounts & login ----------------------------------------------------


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=1024)
    email: Optional[str] = Field(default=None, max_length=254)


class AnonymousRequest(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=100)


class UpgradeRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=1024)
    email: Optional[str] = Field(default=None, max_length=254)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., max_length=1024)
    device_name: Optional[str] = Field(default=None, max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class TokenResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class AccountResponse(BaseModel):
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    status: str
    is_anonymous: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class MeResponse(BaseModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    scope: List[str] = Field(default_factory=list)
    token_type: str
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    anonymous: bool = False
    expires_at: Optional[datetime] = None


# -- sessions ------------------------------------------------------------


class SessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool = False


class RevokeCountResponse(BaseModel):
    revoked: int


class RevokedResponse(BaseModel):
    id: str
    revoked: bool


# -- api keys ------------------------------------------------------------


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    expires_at: Optional[datetime] = None
    scope: Optional[List[str]] = Field(
        default=None,
        description="Subset of the caller's scope to freeze into the key; defaults to the full scope",
    )

    @field_validator("scope")
    @classmethod
    def _validate_scope(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_scope_strings(value)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    scope: List[str] = Field(default_factory=list)


class ApiKeyCreateResponse(ApiKeyResponse):
    key: str = Field(..., description="Raw credential; only returned once")


# -- passkeys ------------------------------------------------------------


class PasskeyRegistrationOptionsRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)


class PasskeyAuthenticationOptionsRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)


class PasskeyOptionsResponse(BaseModel):
    challenge_id: str
    expires_at: datetime
    options: Dict[str, Any]


class PasskeyCredentialPayload(BaseModel):
    """Browser ``PublicKeyCredential`` serialized with base64url fields."""

    model_config = ConfigDict(extra="allow")

    id: str
    rawId: Optional[str] = None
    type: str = "public-key"
    response: Dict[str, Any]


class PasskeyRegisterRequest(BaseModel):
    challenge_id: str
    credential: PasskeyCredentialPayload


class PasskeyAuthenticateRequest(BaseModel):
    challenge_id: str
    credential: PasskeyCredentialPayload
    device_name: Optional[str] = Field(default=None, max_length=100)


class PasskeyRenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class PasskeyResponse(BaseModel):
    id: str
    name: str
    credential_type: str
    attestation_format: str
    aaguid: str
    sign_count: int
    registered_at: datetime
    last_used_at: Optional[datetime] = None
