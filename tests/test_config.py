import pytest
from pydantic import ValidationError

from warden.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    yield monkeypatch
    reset_settings_cache()


def test_from_env_reads_named_variables(clean_env):
    clean_env.setenv("REFRESH_REUSE_GRACE_SECONDS", "15")
    clean_env.setenv("WEBAUTHN_RP_ID", "auth.example.com")
    clean_env.setenv("LOCKOUT_THRESHOLD", "3")
    settings = Settings.from_env()
    assert settings.refresh_reuse_grace_seconds == 15
    assert settings.webauthn_rp_id == "auth.example.com"
    assert settings.lockout_threshold == 3


def test_dotenv_file_is_used_when_environment_is_silent(clean_env, tmp_path):
    clean_env.delenv("ACCESS_TOKEN_TTL_MINUTES", raising=False)
    (tmp_path / ".env").write_text("ACCESS_TOKEN_TTL_MINUTES=7\n")
    assert Settings.from_env().access_token_ttl_minutes == 7


def test_environment_wins_over_dotenv(clean_env, tmp_path):
    (tmp_path / ".env").write_text("ACCESS_TOKEN_TTL_MINUTES=7\n")
    clean_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "9")
    assert Settings.from_env().access_token_ttl_minutes == 9


def test_grace_window_defaults_to_strict():
    assert Settings(jwt_secret="x" * 40).refresh_reuse_grace_seconds == 0


@pytest.mark.parametrize(
    "field, value",
    [
        ("access_token_ttl_minutes", 0),
        ("lockout_threshold", -1),
        ("refresh_reuse_grace_seconds", -5),
        ("housekeeping_interval_seconds", -1),
    ],
)
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: value})


def test_short_explicit_secret_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_secret_is_generated_and_persisted(clean_env, tmp_path):
    clean_env.delenv("JWT_SECRET", raising=False)
    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret
    assert len(first) >= 32
    assert first == second
    assert (tmp_path / "fs" / ".jwt_secret").read_text().strip() == first


def test_get_settings_is_cached_until_reset(clean_env):
    clean_env.setenv("JWT_ISSUER", "first")
    reset_settings_cache()
    assert get_settings().jwt_issuer == "first"
    clean_env.setenv("JWT_ISSUER", "second")
    assert get_settings().jwt_issuer == "first"
    reset_settings_cache()
    assert get_settings().jwt_issuer == "second"
