"""Tests for the signed bearer token codec."""

from datetime import datetime, timedelta, timezone

import pytest

from warden.service.scopes import ScopeDirective
from warden.service.tokens import (
    TOKEN_TYPE_ACCESS,
    TokenCodec,
    claims_expiry,
    generate_refresh_token,
    hash_prefix,
    hash_token,
    looks_like_jwt,
)

NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


def _issue(codec, **overrides):
    kwargs = dict(
        subject="user-1",
        scope=[ScopeDirective.allow("_read", userId="user-1")],
        issued_at=NOW,
        expires_at=NOW + timedelta(minutes=15),
        session_id="sess-1",
        roles=["USER", "USER"],
    )
    kwargs.update(overrides)
    return codec.issue(**kwargs)


class TestIssue:
    def test_claims(self, codec):
        payload = codec.decode(_issue(codec))
        assert payload["sub"] == "user-1"
        assert payload["sid"] == "sess-1"
        assert payload["token_type"] == TOKEN_TYPE_ACCESS
        assert payload["roles"] == ["USER"]
        assert payload["permissions"] == ["_read"]
        assert claims_expiry(payload) == NOW + timedelta(minutes=15)

    def test_refresh_is_always_denied_for_the_subject(self, codec):
        payload = codec.decode(_issue(codec, scope=[ScopeDirective.allow("_write")]))
        assert payload["scope"][0] == "deny;api:auth:refresh;userId=user-1"
        assert "allow;_write" in payload["scope"]

    def test_jti_is_unique_unless_given(self, codec):
        first = codec.decode(_issue(codec))["jti"]
        second = codec.decode(_issue(codec))["jti"]
        assert first != second
        assert codec.decode(_issue(codec, jti="key-1"))["jti"] == "key-1"


class TestDecode:
    def test_tampered_payload_is_rejected(self, codec):
        header, payload, signature = _issue(codec).split(".")
        forged = codec._encode_segment(b'{"sub":"admin"}')
        assert codec.decode(f"{header}.{forged}.{signature}") is None

    def test_alg_none_is_rejected(self, codec):
        token = _issue(codec)
        header = codec._encode_segment(b'{"alg":"none","typ":"JWT"}')
        _, payload, _ = token.split(".")
        assert codec.decode(f"{header}.{payload}.") is None

    def test_garbage_is_rejected(self, codec):
        for token in ("", "a.b", "a.b.c", "!!!.???.###"):
            assert codec.decode(token) is None

    def test_expiry_honours_leeway(self, codec):
        token = _issue(codec)
        expiry = (NOW + timedelta(minutes=15)).timestamp()
        assert codec.decode(token, now=expiry + 60) is not None
        assert codec.decode(token, now=expiry + 121) is None

    def test_issuer_and_audience_must_match(self, codec, settings):
        token = _issue(codec)
        other_issuer = TokenCodec(settings.model_copy(update={"jwt_issuer": "elsewhere"}))
        other_audience = TokenCodec(settings.model_copy(update={"jwt_audience": "someone-else"}))
        assert other_issuer.decode(token) is None
        assert other_audience.decode(token) is None

    def test_audience_list_is_accepted(self, codec, settings):
        token = codec.encode(
            {
                "iss": settings.jwt_issuer,
                "aud": ["other", settings.jwt_audience],
                "sub": "user-1",
                "exp": int((NOW + timedelta(minutes=1)).timestamp()),
            }
        )
        assert codec.decode(token)["sub"] == "user-1"

    def test_missing_expiry_is_rejected(self, codec, settings):
        token = codec.encode({"iss": settings.jwt_issuer, "aud": settings.jwt_audience, "sub": "u"})
        assert codec.decode(token) is None


class TestRefreshTokens:
    def test_refresh_tokens_are_opaque_and_random(self):
        first, second = generate_refresh_token(), generate_refresh_token()
        assert first != second
        assert not looks_like_jwt(first)

    def test_hashing(self):
        digest = hash_token("abc")
        assert digest == hash_token("abc")
        assert len(digest) == 64
        assert hash_prefix(digest) == digest[:8]
        assert hash_prefix(None) is None
