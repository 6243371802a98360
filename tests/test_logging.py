"""Tests for log redaction and correlation ids."""

from warden.logging import _add_correlation_id, _redact_secrets, correlation_id_var, set_correlation_id


class TestRedaction:
    def test_credentials_are_removed_entirely(self):
        event = _redact_secrets(None, "info", {"event": "x", "refresh_token": "abcdefgh", "password": "hunter22"})
        assert event["refresh_token"] == "[redacted]"
        assert event["password"] == "[redacted]"

    def test_handles_pass_through(self):
        event = _redact_secrets(
            None,
            "info",
            {"event": "x", "token_hash_prefix": "ab12cd", "credential_id": "c1", "token_type": "access"},
        )
        assert event["token_hash_prefix"] == "ab12cd"
        assert event["credential_id"] == "c1"
        assert event["token_type"] == "access"

    def test_pii_is_partially_masked(self):
        event = _redact_secrets(None, "info", {"event": "x", "email": "alice@example.com", "ip_address": "10.0.0.42"})
        assert event["email"] == "a***@example.com"
        assert event["ip_address"] == "10***42"

    def test_nested_details_are_scrubbed(self):
        event = _redact_secrets(None, "info", {"event": "x", "detail": {"api_key": "k" * 40, "field": "name"}})
        assert event["detail"] == {"api_key": "[redacted]", "field": "name"}


class TestCorrelationId:
    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
            assert len(cid) == 36
            assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
        finally:
            correlation_id_var.reset(token)

    def test_explicit_id_is_kept(self):
        token = correlation_id_var.set(None)
        try:
            assert set_correlation_id("req-1") == "req-1"
        finally:
            correlation_id_var.reset(token)
