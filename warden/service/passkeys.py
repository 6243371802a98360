"""WebAuthn-style passkey registration and authentication.

Challenges are single use: they are removed from the store before any
verification work starts, so a second attempt with the same challenge fails
whether or not the first one succeeded.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import struct
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.serialization import load_der_public_key

from warden.config import Settings
from warden.logging import get_logger, log_security_event
from warden.service.errors import (
    AccountStateViolation,
    ChallengeInvalid,
    InvalidCredential,
    NotFoundError,
    ValidationError,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Account,
    PasskeyChallenge,
    PasskeyChallengeType,
    PasskeyCredential,
)

logger = get_logger(__name__)

CHALLENGE_BYTES = 32
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
COSE_ES256 = -7
COSE_EDDSA = -8
_AUTH_DATA_MIN_LENGTH = 37


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("malformed base64url value") from exc


def user_handle_for(user_id: str) -> bytes:
    try:
        return uuid.UUID(user_id).bytes
    except ValueError:
        return user_id.encode("utf-8")


_SIGNATURE_VERIFIERS: Dict[str, Tuple[type, Callable[[Any, bytes, bytes], None]]] = {
    "es256": (
        ec.EllipticCurvePublicKey,
        lambda key, signature, payload: key.verify(signature, payload, ec.ECDSA(hashes.SHA256())),
    ),
    "eddsa": (
        ed25519.Ed25519PublicKey,
        lambda key, signature, payload: key.verify(signature, payload),
    ),
}


def _load_public_key(public_key: bytes) -> Tuple[str, Any]:
    try:
        key = load_der_public_key(public_key)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValidationError("unsupported public key", detail={"field": "publicKey"}) from exc
    if isinstance(key, ec.EllipticCurvePublicKey) and isinstance(key.curve, ec.SECP256R1):
        return "es256", key
    if isinstance(key, ed25519.Ed25519PublicKey):
        return "eddsa", key
    raise ValidationError("unsupported public key", detail={"field": "publicKey"})


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @classmethod
    def parse(cls, raw: bytes) -> "AuthenticatorData":
        if len(raw) < _AUTH_DATA_MIN_LENGTH:
            raise InvalidCredential("authenticator data too short")
        (sign_count,) = struct.unpack(">I", raw[33:37])
        return cls(rp_id_hash=raw[:32], flags=raw[32], sign_count=sign_count)


@dataclass(frozen=True)
class RegistrationResponse:
    credential_id: bytes
    client_data_json: bytes
    public_key: bytes
    authenticator_data: Optional[bytes] = None
    attestation_format: str = "none"
    aaguid: str = "00000000-0000-0000-0000-000000000000"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RegistrationResponse":
        response = data.get("response") or {}
        raw_id = data.get("rawId") or data.get("id")
        if not raw_id or not response.get("clientDataJSON") or not response.get("publicKey"):
            raise ValidationError("incomplete registration response")
        auth_data = response.get("authenticatorData")
        return cls(
            credential_id=b64url_decode(raw_id),
            client_data_json=b64url_decode(response["clientDataJSON"]),
            public_key=b64url_decode(response["publicKey"]),
            authenticator_data=b64url_decode(auth_data) if auth_data else None,
            attestation_format=data.get("attestationFormat") or "none",
            aaguid=data.get("aaguid") or cls.aaguid,
        )


@dataclass(frozen=True)
class AssertionResponse:
    credential_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    signature: bytes
    user_handle: Optional[bytes] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssertionResponse":
        response = data.get("response") or {}
        raw_id = data.get("rawId") or data.get("id")
        required = ("clientDataJSON", "authenticatorData", "signature")
        if not raw_id or any(not response.get(k) for k in required):
            raise ValidationError("incomplete assertion response")
        handle = response.get("userHandle")
        return cls(
            credential_id=b64url_decode(raw_id),
            client_data_json=b64url_decode(response["clientDataJSON"]),
            authenticator_data=b64url_decode(response["authenticatorData"]),
            signature=b64url_decode(response["signature"]),
            user_handle=b64url_decode(handle) if handle else None,
        )


class PasskeyService:
    def __init__(self, store, settings: Settings, auth_service) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth_service
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def challenge_lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.passkey_challenge_ttl_seconds)

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.settings.webauthn_rp_id.encode("utf-8")).digest()

    # -- options -------------------------------------------------------

    def registration_options(
        self, user_id: str, credential_name: Optional[str] = None
    ) -> Tuple[PasskeyChallenge, Dict[str, Any]]:
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError("account not found")
        raw = secrets.token_bytes(CHALLENGE_BYTES)
        options = {
            "rp": {"id": self.settings.webauthn_rp_id, "name": self.settings.webauthn_rp_name},
            "user": {
                "id": b64url_encode(user_handle_for(account.id)),
                "name": account.username or account.id,
                "displayName": account.username or account.id,
            },
            "challenge": b64url_encode(raw),
            "pubKeyCredParams": [
                {"type": "public-key", "alg": COSE_ES256},
                {"type": "public-key", "alg": COSE_EDDSA},
            ],
            "timeout": self.settings.passkey_challenge_ttl_seconds * 1000,
            "attestation": "none",
            "excludeCredentials": [
                {"type": "public-key", "id": b64url_encode(c.credential_id)}
                for c in self.store.list_passkeys(account.id)
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }
        challenge = self.store.save_passkey_challenge(
            PasskeyChallenge.create(
                raw,
                account.id,
                PasskeyChallengeType.REGISTRATION,
                json.dumps(options, separators=(",", ":")),
                credential_name,
                lifetime=self.challenge_lifetime,
                now=self._now(),
            )
        )
        return challenge, options

    def authentication_options(
        self, username: Optional[str] = None
    ) -> Tuple[PasskeyChallenge, Dict[str, Any]]:
        """Options for a login ceremony.

        Unknown usernames get the same shape with an empty ``allowCredentials``.
        """
        account: Optional[Account] = None
        if username and username.strip():
            account = self.store.get_account_by_username(username)
        allow = []
        if account is not None:
            allow = [
                {"type": "public-key", "id": b64url_encode(c.credential_id)}
                for c in self.store.list_passkeys(account.id)
            ]
        raw = secrets.token_bytes(CHALLENGE_BYTES)
        options = {
            "challenge": b64url_encode(raw),
            "rpId": self.settings.webauthn_rp_id,
            "timeout": self.settings.passkey_challenge_ttl_seconds * 1000,
            "userVerification": "preferred",
            "allowCredentials": allow,
        }
        challenge = self.store.save_passkey_challenge(
            PasskeyChallenge.create(
                raw,
                account.id if account else None,
                PasskeyChallengeType.AUTHENTICATION,
                json.dumps(options, separators=(",", ":")),
                lifetime=self.challenge_lifetime,
                now=self._now(),
            )
        )
        return challenge, options

    # -- verification --------------------------------------------------

    def _consume_challenge(
        self,
        challenge_id: str,
        user_id: Optional[str],
        type: PasskeyChallengeType,
        now: datetime,
    ) -> PasskeyChallenge:
        challenge = self.store.take_passkey_challenge(challenge_id)
        if challenge is None:
            log_security_event("passkey_challenge_unknown_or_reused", challenge_id=challenge_id)
            raise ChallengeInvalid("challenge missing or already consumed")
        if not challenge.is_valid_for(user_id, type, now):
            self.logger.info(
                "passkey_challenge_rejected",
                challenge_id=challenge_id,
                expired=challenge.is_expired(now),
                type=challenge.type.value,
            )
            raise ChallengeInvalid("challenge expired, wrong type or foreign")
        return challenge

    def _check_client_data(self, raw: bytes, expected_type: str, challenge: bytes) -> None:
        try:
            client = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidCredential("client data is not JSON") from exc
        if not isinstance(client, dict) or client.get("type") != expected_type:
            raise InvalidCredential("client data type mismatch")
        presented = client.get("challenge")
        if not isinstance(presented, str) or not hmac.compare_digest(
            presented.rstrip("="), b64url_encode(challenge)
        ):
            raise ChallengeInvalid("client data challenge mismatch")
        if client.get("origin") != self.settings.webauthn_origin:
            raise InvalidCredential("origin mismatch")

    def _check_authenticator_data(self, raw: bytes) -> AuthenticatorData:
        parsed = AuthenticatorData.parse(raw)
        if not hmac.compare_digest(parsed.rp_id_hash, self.rp_id_hash):
            raise InvalidCredential("rp id hash mismatch")
        if not parsed.user_present:
            raise InvalidCredential("user presence flag not set")
        return parsed

    def verify_registration(
        self,
        user_id: str,
        challenge_id: str,
        response: RegistrationResponse,
        *,
        now: Optional[datetime] = None,
    ) -> PasskeyCredential:
        now = now or self._now()
        challenge = self._consume_challenge(
            challenge_id, user_id, PasskeyChallengeType.REGISTRATION, now
        )
        self._check_client_data(response.client_data_json, "webauthn.create", challenge.challenge)
        if (response.attestation_format or "none") != "none":
            raise ValidationError("only 'none' attestation is supported")
        _load_public_key(response.public_key)
        sign_count = 0
        if response.authenticator_data:
            sign_count = self._check_authenticator_data(response.authenticator_data).sign_count
        if self.store.get_passkey_by_credential_id(response.credential_id) is not None:
            raise ValidationError("credential already registered", detail={"field": "credential_id"})
        credential = PasskeyCredential.create(
            user_id,
            challenge.credential_name,
            response.credential_id,
            response.public_key,
            sign_count,
            response.aaguid,
            user_handle_for(user_id),
            response.attestation_format,
            now=now,
        )
        try:
            saved = self.store.save_passkey(credential)
        except ConstraintViolation as exc:
            raise ValidationError("credential already registered", detail={"field": "credential_id"}) from exc
        self.logger.info("passkey_registered", user_id=user_id, passkey_id=saved.id)
        self.auth.accounts.upgrade_anonymous_with_credential(user_id, "passkey")
        return saved

    async def verify_authentication(
        self,
        challenge_id: str,
        response: AssertionResponse,
        *,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        """Verify an assertion and start a session for the credential's owner."""
        now = now or self._now()
        challenge = self._consume_challenge(
            challenge_id,
            None,
            PasskeyChallengeType.AUTHENTICATION,
            now,
        )
        credential = self.store.get_passkey_by_credential_id(response.credential_id)
        if credential is None:
            raise InvalidCredential("unknown credential")
        if challenge.user_id is not None and credential.user_id != challenge.user_id:
            raise InvalidCredential("credential not allowed for this challenge")
        if response.user_handle is not None and not hmac.compare_digest(
            response.user_handle, credential.user_handle
        ):
            raise InvalidCredential("user handle mismatch")

        self._check_client_data(response.client_data_json, "webauthn.get", challenge.challenge)
        auth_data = self._check_authenticator_data(response.authenticator_data)
        algorithm, key = _load_public_key(credential.public_key)
        expected_type, verifier = _SIGNATURE_VERIFIERS[algorithm]
        if not isinstance(key, expected_type):
            raise InvalidCredential("key type mismatch")
        signed = response.authenticator_data + hashlib.sha256(response.client_data_json).digest()
        try:
            verifier(key, response.signature, signed)
        except InvalidSignature as exc:
            log_security_event("passkey_signature_invalid", passkey_id=credential.id)
            raise InvalidCredential("signature verification failed") from exc

        if auth_data.sign_count <= credential.sign_count:
            log_security_event(
                "passkey_counter_regression",
                user_id=credential.user_id,
                passkey_id=credential.id,
                stored=credential.sign_count,
                presented=auth_data.sign_count,
            )
            raise InvalidCredential("signature counter did not increase")

        account = self.store.get_account(credential.user_id)
        if account is None:
            raise InvalidCredential("credential owner missing")
        if not account.can_authenticate(now):
            raise AccountStateViolation(f"passkey login while {account.status.value}")
        if not self.store.update_passkey_sign_count(
            credential.id, credential.sign_count, auth_data.sign_count, now
        ):
            raise InvalidCredential("signature counter changed concurrently")
        account.record_successful_login(now)
        account = self.store.save_account(account)
        self.logger.info("passkey_login_succeeded", user_id=account.id, passkey_id=credential.id)
        return await self.auth.issue_for_account(
            account, device_name=device_name, user_agent=user_agent, ip_addr=ip_addr, now=now
        )

    # -- management ----------------------------------------------------

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        return self.store.list_passkeys(user_id)

    def _owned(self, user_id: str, passkey_id: str) -> PasskeyCredential:
        credential = self.store.get_passkey(passkey_id)
        if credential is None or credential.user_id != user_id:
            raise NotFoundError("passkey not found", detail={"passkey_id": passkey_id})
        return credential

    def rename_passkey(self, user_id: str, passkey_id: str, name: str) -> PasskeyCredential:
        credential = self._owned(user_id, passkey_id)
        credential.rename(name)
        return self.store.save_passkey(credential)

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        self._owned(user_id, passkey_id)
        deleted = self.store.delete_passkey(passkey_id)
        self.logger.info("passkey_deleted", user_id=user_id, passkey_id=passkey_id)
        return deleted

    def delete_expired_challenges(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_passkey_challenges(now or self._now())
