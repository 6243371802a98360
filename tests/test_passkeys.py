"""Passkey ceremonies against a software authenticator."""

import hashlib
import json
import os
import struct
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from warden.service.errors import (
    AccountStateViolation,
    ChallengeInvalid,
    InvalidCredential,
    NotFoundError,
    ValidationError,
)
from warden.service.passkeys import (
    AssertionResponse,
    AuthenticatorData,
    RegistrationResponse,
    b64url_decode,
    b64url_encode,
)

ORIGIN = "http://localhost:8000"
PASSWORD = "correct horse battery"


class SoftAuthenticator:
    """Minimal authenticator producing 'none' attestation and signed assertions."""

    def __init__(self, rp_id="localhost", origin=ORIGIN, algorithm="es256"):
        self.rp_id = rp_id
        self.origin = origin
        if algorithm == "es256":
            self.private_key = ec.generate_private_key(ec.SECP256R1())
        else:
            self.private_key = ed25519.Ed25519PrivateKey.generate()
        self.algorithm = algorithm
        self.credential_id = os.urandom(16)
        self.counter = 0

    @property
    def public_key_der(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    def client_data(self, kind, challenge, origin=None) -> bytes:
        return json.dumps(
            {"type": kind, "challenge": challenge, "origin": origin or self.origin}
        ).encode()

    def authenticator_data(self, counter, flags=0x01) -> bytes:
        rp_hash = hashlib.sha256(self.rp_id.encode()).digest()
        return rp_hash + bytes([flags]) + struct.pack(">I", counter)

    def register(self, options, *, origin=None) -> dict:
        return {
            "id": b64url_encode(self.credential_id),
            "rawId": b64url_encode(self.credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(
                    self.client_data("webauthn.create", options["challenge"], origin)
                ),
                "publicKey": b64url_encode(self.public_key_der),
                "authenticatorData": b64url_encode(self.authenticator_data(self.counter)),
            },
        }

    def assert_(self, options, *, counter=None, origin=None, flags=0x01, tamper=False) -> dict:
        if counter is None:
            self.counter += 1
            counter = self.counter
        client_data = self.client_data("webauthn.get", options["challenge"], origin)
        auth_data = self.authenticator_data(counter, flags)
        signed = auth_data + hashlib.sha256(client_data).digest()
        if self.algorithm == "es256":
            signature = self.private_key.sign(signed, ec.ECDSA(hashes.SHA256()))
        else:
            signature = self.private_key.sign(signed)
        if tamper:
            auth_data = auth_data[:-1] + bytes([auth_data[-1] ^ 0xFF])
        return {
            "id": b64url_encode(self.credential_id),
            "rawId": b64url_encode(self.credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(signature),
            },
        }


@pytest.fixture
def account(services):
    return services.accounts.register("alice", PASSWORD)


def _enrol(services, account, authenticator, name="Laptop"):
    challenge, options = services.passkeys.registration_options(account.id, name)
    payload = authenticator.register(options)
    return services.passkeys.verify_registration(
        account.id, challenge.id, RegistrationResponse.from_dict(payload)
    )


async def _login(services, authenticator, username="alice", **kwargs):
    challenge, options = services.passkeys.authentication_options(username)
    payload = authenticator.assert_(options, **kwargs)
    return await services.passkeys.verify_authentication(
        challenge.id, AssertionResponse.from_dict(payload)
    )


class TestEncoding:
    def test_b64url_roundtrip_without_padding(self):
        encoded = b64url_encode(b"\xfb\xff")
        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xfb\xff"

    def test_malformed_b64url_is_validation_error(self):
        with pytest.raises(ValidationError):
            b64url_decode("a")

    def test_authenticator_data_parsing(self):
        raw = b"\x00" * 32 + bytes([0x05]) + struct.pack(">I", 42)
        parsed = AuthenticatorData.parse(raw)
        assert parsed.sign_count == 42
        assert parsed.user_present and parsed.user_verified
        with pytest.raises(InvalidCredential):
            AuthenticatorData.parse(raw[:36])

    def test_incomplete_payloads_are_rejected(self):
        with pytest.raises(ValidationError):
            RegistrationResponse.from_dict({"id": "abc", "response": {}})
        with pytest.raises(ValidationError):
            AssertionResponse.from_dict({"id": "abc", "response": {"clientDataJSON": "e30"}})


class TestRegistration:
    def test_register_stores_credential(self, services, account):
        authenticator = SoftAuthenticator()
        credential = _enrol(services, account, authenticator)
        assert credential.user_id == account.id
        assert credential.name == "Laptop"
        assert credential.sign_count == 0
        assert credential.credential_id == authenticator.credential_id
        assert [c.id for c in services.passkeys.list_passkeys(account.id)] == [credential.id]

    async def test_enrolling_a_passkey_upgrades_a_guest(self, services):
        guest = services.accounts.register_anonymous()
        authenticator = SoftAuthenticator()
        _enrol(services, guest, authenticator)
        stored = services.store.get_account(guest.id)
        assert not stored.is_anonymous
        assert stored.username is None
        _, _, pair = await _login(services, authenticator, username=None)
        assert services.codec.decode(pair.access_token)["anonymous"] is False

    def test_options_exclude_existing_credentials(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        _, options = services.passkeys.registration_options(account.id)
        assert options["excludeCredentials"] == [
            {"type": "public-key", "id": b64url_encode(authenticator.credential_id)}
        ]
        assert options["rp"]["id"] == "localhost"

    def test_challenge_is_single_use(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        payload = RegistrationResponse.from_dict(authenticator.register(options))
        services.passkeys.verify_registration(account.id, challenge.id, payload)
        with pytest.raises(ChallengeInvalid):
            services.passkeys.verify_registration(account.id, challenge.id, payload)

    def test_failed_attempt_still_consumes_challenge(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        bad = RegistrationResponse.from_dict(authenticator.register(options, origin="https://evil.test"))
        with pytest.raises(InvalidCredential):
            services.passkeys.verify_registration(account.id, challenge.id, bad)
        good = RegistrationResponse.from_dict(authenticator.register(options))
        with pytest.raises(ChallengeInvalid):
            services.passkeys.verify_registration(account.id, challenge.id, good)

    def test_challenge_of_another_account_is_rejected(self, services, account):
        other = services.accounts.register("mallory", PASSWORD)
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        payload = RegistrationResponse.from_dict(authenticator.register(options))
        with pytest.raises(ChallengeInvalid):
            services.passkeys.verify_registration(other.id, challenge.id, payload)

    def test_expired_challenge_is_rejected(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        payload = RegistrationResponse.from_dict(authenticator.register(options))
        later = challenge.expires_at + timedelta(seconds=1)
        with pytest.raises(ChallengeInvalid):
            services.passkeys.verify_registration(account.id, challenge.id, payload, now=later)

    def test_wrong_challenge_in_client_data(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, _ = services.passkeys.registration_options(account.id)
        payload = authenticator.register({"challenge": b64url_encode(b"x" * 32)})
        with pytest.raises(ChallengeInvalid):
            services.passkeys.verify_registration(
                account.id, challenge.id, RegistrationResponse.from_dict(payload)
            )

    def test_duplicate_credential_is_rejected(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        with pytest.raises(ValidationError):
            _enrol(services, account, authenticator)

    def test_unsupported_key_is_rejected(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        payload = authenticator.register(options)
        payload["response"]["publicKey"] = b64url_encode(b"not a key")
        with pytest.raises(ValidationError):
            services.passkeys.verify_registration(
                account.id, challenge.id, RegistrationResponse.from_dict(payload)
            )

    def test_attestation_other_than_none_is_rejected(self, services, account):
        authenticator = SoftAuthenticator()
        challenge, options = services.passkeys.registration_options(account.id)
        payload = authenticator.register(options)
        payload["attestationFormat"] = "packed"
        with pytest.raises(ValidationError):
            services.passkeys.verify_registration(
                account.id, challenge.id, RegistrationResponse.from_dict(payload)
            )


class TestAuthentication:
    async def test_login_issues_session(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        logged_in, session, pair = await _login(services, authenticator)
        assert logged_in.id == account.id
        assert session.user_id == account.id
        ctx = await services.auth.authenticate(f"Bearer {pair.access_token}")
        assert ctx.session_id == session.id

    async def test_ed25519_credentials(self, services, account):
        authenticator = SoftAuthenticator(algorithm="eddsa")
        _enrol(services, account, authenticator)
        logged_in, _, _ = await _login(services, authenticator)
        assert logged_in.id == account.id

    async def test_counter_advances(self, services, account):
        authenticator = SoftAuthenticator()
        credential = _enrol(services, account, authenticator)
        await _login(services, authenticator, counter=5)
        assert services.store.get_passkey(credential.id).sign_count == 5

    async def test_counter_regression_is_rejected(self, services, account):
        authenticator = SoftAuthenticator()
        credential = _enrol(services, account, authenticator)
        await _login(services, authenticator, counter=5)
        for stale in (5, 4):
            with pytest.raises(InvalidCredential):
                await _login(services, authenticator, counter=stale)
        assert services.store.get_passkey(credential.id).sign_count == 5

    async def test_zero_counter_is_rejected_even_when_stored_zero(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        with pytest.raises(InvalidCredential):
            await _login(services, authenticator, counter=0)

    async def test_unknown_username_gets_empty_allow_list(self, services, account):
        _enrol(services, account, SoftAuthenticator())
        _, unknown = services.passkeys.authentication_options("nobody")
        _, known = services.passkeys.authentication_options("alice")
        assert unknown["allowCredentials"] == []
        assert len(known["allowCredentials"]) == 1
        assert set(unknown) == set(known)

    async def test_usernameless_login(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        logged_in, _, _ = await _login(services, authenticator, username=None)
        assert logged_in.id == account.id

    async def test_origin_mismatch(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        with pytest.raises(InvalidCredential):
            await _login(services, authenticator, origin="https://phish.example")

    async def test_rp_id_mismatch(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        authenticator.rp_id = "evil.example"
        with pytest.raises(InvalidCredential):
            await _login(services, authenticator)

    async def test_user_presence_required(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        with pytest.raises(InvalidCredential):
            await _login(services, authenticator, flags=0x00)

    async def test_tampered_signature_input(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        with pytest.raises(InvalidCredential):
            await _login(services, authenticator, tamper=True)

    async def test_unknown_credential(self, services, account):
        _enrol(services, account, SoftAuthenticator())
        with pytest.raises(InvalidCredential):
            await _login(services, SoftAuthenticator())

    async def test_credential_of_another_user_for_named_challenge(self, services, account):
        _enrol(services, account, SoftAuthenticator())
        bob = services.accounts.register("bob", PASSWORD)
        bobs_key = SoftAuthenticator()
        _enrol(services, bob, bobs_key)
        with pytest.raises(InvalidCredential):
            await _login(services, bobs_key, username="alice")

    async def test_assertion_challenge_is_single_use(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        challenge, options = services.passkeys.authentication_options("alice")
        payload = AssertionResponse.from_dict(authenticator.assert_(options))
        await services.passkeys.verify_authentication(challenge.id, payload)
        with pytest.raises(ChallengeInvalid):
            await services.passkeys.verify_authentication(challenge.id, payload)

    async def test_registration_challenge_cannot_authenticate(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        challenge, options = services.passkeys.registration_options(account.id)
        payload = AssertionResponse.from_dict(authenticator.assert_(options))
        with pytest.raises(ChallengeInvalid):
            await services.passkeys.verify_authentication(challenge.id, payload)

    async def test_suspended_account_cannot_log_in(self, services, account):
        authenticator = SoftAuthenticator()
        _enrol(services, account, authenticator)
        services.accounts.suspend(account.id)
        with pytest.raises(AccountStateViolation):
            await _login(services, authenticator)


class TestManagement:
    def test_rename(self, services, account):
        credential = _enrol(services, account, SoftAuthenticator())
        renamed = services.passkeys.rename_passkey(account.id, credential.id, "  YubiKey ")
        assert renamed.name == "YubiKey"
        with pytest.raises(ValidationError):
            services.passkeys.rename_passkey(account.id, credential.id, "   ")

    def test_foreign_passkey_is_not_found(self, services, account):
        credential = _enrol(services, account, SoftAuthenticator())
        bob = services.accounts.register("bob", PASSWORD)
        with pytest.raises(NotFoundError):
            services.passkeys.rename_passkey(bob.id, credential.id, "mine now")
        with pytest.raises(NotFoundError):
            services.passkeys.delete_passkey(bob.id, credential.id)
        assert services.store.get_passkey(credential.id) is not None

    def test_delete(self, services, account):
        credential = _enrol(services, account, SoftAuthenticator())
        assert services.passkeys.delete_passkey(account.id, credential.id)
        assert services.passkeys.list_passkeys(account.id) == []

    def test_expired_challenges_are_purged(self, services, account):
        challenge, _ = services.passkeys.registration_options(account.id)
        services.passkeys.authentication_options()
        later = challenge.expires_at + timedelta(seconds=1)
        assert services.passkeys.delete_expired_challenges(later) == 2
