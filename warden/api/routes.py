from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Path, Request

from warden.api.deps import client_metadata, require_permission
from warden.api.schemas import (
    AccountResponse,
    AnonymousRequest,
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    ApiKeyResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    PasskeyAuthenticateRequest,
    PasskeyAuthenticationOptionsRequest,
    PasskeyOptionsResponse,
    PasskeyRegisterRequest,
    PasskeyRegistrationOptionsRequest,
    PasskeyRenameRequest,
    PasskeyResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeCountResponse,
    RevokedResponse,
    SessionResponse,
    TokenResponse,
    UpgradeRequest,
)
from warden.service.auth import AuthContext
from warden.service.errors import NotFoundError, PermissionDenied, ValidationError
from warden.service.passkeys import AssertionResponse, RegistrationResponse
from warden.service.permissions import PermissionIds
from warden.service.runtime import get_runtime
from warden.service.scopes import parse_scope, serialize_scope
from warden.service.tokens import TokenPair
from warden.storage.models import Account, ApiKey, PasskeyChallenge, PasskeyCredential

router = APIRouter(prefix="/v1/auth")


def _token_response(user_id: str, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        user_id=user_id,
        session_id=pair.session_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        email_verified=account.email_verified,
        status=account.status.value,
        is_anonymous=account.is_anonymous,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


def _api_key_response(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=api_key.id,
        name=api_key.name,
        created_at=api_key.created_at,
        expires_at=api_key.expires_at,
        last_used_at=api_key.last_used_at,
        revoked_at=api_key.revoked_at,
        scope=list(api_key.scope),
    )


def _passkey_response(credential: PasskeyCredential) -> PasskeyResponse:
    return PasskeyResponse(
        id=credential.id,
        name=credential.name,
        credential_type=credential.credential_type,
        attestation_format=credential.attestation_format,
        aaguid=credential.aaguid,
        sign_count=credential.sign_count,
        registered_at=credential.registered_at,
        last_used_at=credential.last_used_at,
    )


def _options_response(challenge: PasskeyChallenge, options: dict) -> PasskeyOptionsResponse:
    return PasskeyOptionsResponse(
        challenge_id=challenge.id, expires_at=challenge.expires_at, options=options
    )


# -- accounts & tokens -------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a local account. It becomes active on its first successful login."""
    runtime = get_runtime()
    account = runtime.accounts.register(body.username, body.password, body.email)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/anonymous", response_model=Envelope, status_code=201, tags=["auth"])
async def register_anonymous(request: Request, body: Optional[AnonymousRequest] = None):
    """Start a guest session. The access token carries ``anonymous: true``."""
    runtime = get_runtime()
    account = runtime.accounts.register_anonymous()
    _account, _session, pair = await runtime.auth.issue_for_account(
        account,
        device_name=body.device_name if body else None,
        **client_metadata(request),
    )
    return Envelope(status="ok", data=_token_response(account.id, pair))


@router.post("/upgrade", response_model=Envelope, tags=["auth"])
async def upgrade(
    body: UpgradeRequest,
    ctx: AuthContext = Depends(require_permission(PermissionIds.AUTH_UPGRADE)),
):
    """Turn the calling guest account into a password account.

    Tokens issued before the upgrade keep ``anonymous: true`` until the next
    refresh or login.
    """
    runtime = get_runtime()
    account = runtime.accounts.upgrade_anonymous(ctx.user_id, body.username, body.password, body.email)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username or email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is locked, suspended or deactivated
    """
    runtime = get_runtime()
    account, _session, pair = await runtime.auth.login(
        body.identifier,
        body.password,
        device_name=body.device_name,
        **client_metadata(request),
    )
    return Envelope(status="ok", data=_token_response(account.id, pair))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange the current refresh token for a new pair.

    Every failure is the same 401, whether the token was unknown, expired,
    revoked or replayed.
    """
    runtime = get_runtime()
    account, _session, pair = await runtime.auth.refresh_tokens(body.refresh_token)
    return Envelope(status="ok", data=_token_response(account.id, pair))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: AuthContext = Depends(require_permission(PermissionIds.AUTH_LOGOUT))):
    if ctx.session_id is None:
        raise ValidationError("credential is not bound to a session")
    runtime = get_runtime()
    revoked = await runtime.auth.logout(ctx.session_id)
    return Envelope(status="ok", data=RevokedResponse(id=ctx.session_id, revoked=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(require_permission(PermissionIds.AUTH_ME))):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=ctx.user_id,
            username=ctx.username,
            email=ctx.email,
            roles=ctx.roles,
            scope=serialize_scope(ctx.scope),
            token_type=ctx.token_type,
            session_id=ctx.session_id,
            api_key_id=ctx.api_key_id,
            anonymous=ctx.anonymous,
            expires_at=ctx.expires_at,
        ),
    )


# -- sessions ----------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    ctx: AuthContext = Depends(require_permission(PermissionIds.SESSIONS_LIST)),
):
    runtime = get_runtime()
    views = runtime.auth.list_sessions(ctx.user_id, ctx.session_id)
    return Envelope(
        status="ok",
        data=[SessionResponse(**asdict(view)) for view in views],
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PermissionIds.SESSIONS_REVOKE)),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_session(ctx.user_id, session_id)
    return Envelope(status="ok", data=RevokedResponse(id=session_id, revoked=revoked))


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    ctx: AuthContext = Depends(require_permission(PermissionIds.SESSIONS_REVOKE_ALL)),
):
    """Log out everywhere, the calling session included."""
    runtime = get_runtime()
    count = await runtime.auth.revoke_all_sessions(ctx.user_id)
    return Envelope(status="ok", data=RevokeCountResponse(revoked=count))


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    ctx: AuthContext = Depends(require_permission(PermissionIds.SESSIONS_REVOKE_ALL)),
):
    if ctx.session_id is None:
        raise ValidationError("credential is not bound to a session")
    runtime = get_runtime()
    count = await runtime.auth.revoke_other_sessions(ctx.user_id, ctx.session_id)
    return Envelope(status="ok", data=RevokeCountResponse(revoked=count))


# -- api keys ----------------------------------------------------------


@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api_keys"])
async def create_api_key(
    body: ApiKeyCreateRequest,
    ctx: AuthContext = Depends(require_permission(PermissionIds.API_KEYS_CREATE)),
):
    """Mint a restricted API key. The raw key is only shown in this response."""
    runtime = get_runtime()
    scope = ctx.scope
    if body.scope is not None:
        scope = parse_scope(body.scope)
        for directive in scope:
            if directive.is_allow and not ctx.has_permission(directive.path, directive.params()):
                raise PermissionDenied(
                    f"requested {directive} exceeds caller scope",
                    detail={"directive": str(directive)},
                )
    api_key, raw = runtime.api_keys.create(
        ctx.user_id,
        scope,
        body.name,
        body.expires_at,
        username=ctx.username,
        email=ctx.email,
        roles=ctx.roles,
    )
    return Envelope(
        status="ok",
        data=ApiKeyCreateResponse(key=raw, **_api_key_response(api_key).model_dump()),
    )


@router.get("/api-keys", response_model=Envelope, tags=["api_keys"])
async def list_api_keys(
    ctx: AuthContext = Depends(require_permission(PermissionIds.API_KEYS_LIST)),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[_api_key_response(k) for k in runtime.api_keys.list(ctx.user_id)]
    )


@router.delete("/api-keys/{key_id}", response_model=Envelope, tags=["api_keys"])
async def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PermissionIds.API_KEYS_REVOKE)),
):
    runtime = get_runtime()
    if not runtime.api_keys.revoke(ctx.user_id, key_id):
        raise NotFoundError("api key not found", detail={"api_key_id": key_id})
    return Envelope(status="ok", data=RevokedResponse(id=key_id, revoked=True))


# -- passkeys ----------------------------------------------------------


@router.post("/passkeys/registration/options", response_model=Envelope, tags=["passkeys"])
async def passkey_registration_options(
    body: PasskeyRegistrationOptionsRequest,
    ctx: AuthContext = Depends(require_permission(PermissionIds.PASSKEYS_REGISTER)),
):
    runtime = get_runtime()
    challenge, options = runtime.passkeys.registration_options(ctx.user_id, body.name)
    return Envelope(status="ok", data=_options_response(challenge, options))


@router.post("/passkeys/registration", response_model=Envelope, status_code=201, tags=["passkeys"])
async def passkey_register(
    body: PasskeyRegisterRequest,
    ctx: AuthContext = Depends(require_permission(PermissionIds.PASSKEYS_REGISTER)),
):
    runtime = get_runtime()
    response = RegistrationResponse.from_dict(body.credential.model_dump())
    credential = runtime.passkeys.verify_registration(ctx.user_id, body.challenge_id, response)
    return Envelope(status="ok", data=_passkey_response(credential))


@router.post("/passkeys/authentication/options", response_model=Envelope, tags=["passkeys"])
async def passkey_authentication_options(body: Optional[PasskeyAuthenticationOptionsRequest] = None):
    """Start a passkey login. Unknown usernames get the same response shape."""
    runtime = get_runtime()
    username = body.username if body else None
    challenge, options = runtime.passkeys.authentication_options(username)
    return Envelope(status="ok", data=_options_response(challenge, options))


@router.post("/passkeys/authentication", response_model=Envelope, tags=["passkeys"])
async def passkey_authenticate(body: PasskeyAuthenticateRequest, request: Request):
    runtime = get_runtime()
    response = AssertionResponse.from_dict(body.credential.model_dump())
    account, _session, pair = await runtime.passkeys.verify_authentication(
        body.challenge_id,
        response,
        device_name=body.device_name,
        **client_metadata(request),
    )
    return Envelope(status="ok", data=_token_response(account.id, pair))


@router.get("/passkeys", response_model=Envelope, tags=["passkeys"])
async def list_passkeys(
    ctx: AuthContext = Depends(require_permission(PermissionIds.PASSKEYS_LIST)),
):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=[_passkey_response(c) for c in runtime.passkeys.list_passkeys(ctx.user_id)],
    )


@router.patch("/passkeys/{passkey_id}", response_model=Envelope, tags=["passkeys"])
async def rename_passkey(
    body: PasskeyRenameRequest,
    passkey_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PermissionIds.PASSKEYS_RENAME)),
):
    runtime = get_runtime()
    credential = runtime.passkeys.rename_passkey(ctx.user_id, passkey_id, body.name)
    return Envelope(status="ok", data=_passkey_response(credential))


@router.delete("/passkeys/{passkey_id}", response_model=Envelope, tags=["passkeys"])
async def delete_passkey(
    passkey_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PermissionIds.PASSKEYS_DELETE)),
):
    runtime = get_runtime()
    deleted = runtime.passkeys.delete_passkey(ctx.user_id, passkey_id)
    return Envelope(status="ok", data=RevokedResponse(id=passkey_id, revoked=deleted))

