import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402

from warden.config import Settings  # noqa: E402
from warden.service.accounts import AccountService  # noqa: E402
from warden.service.api_keys import ApiKeyService  # noqa: E402
from warden.service.auth import AuthService  # noqa: E402
from warden.service.passkeys import PasskeyService  # noqa: E402
from warden.service.roles import ensure_system_roles  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.service.tokens import TokenCodec  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    """Give every test a fresh runtime over an empty state directory."""
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-with-enough-entropy-0123456789",
        shared_fs_root=str(tmp_path / "fs"),
        test_mode=True,
        use_memory_store=True,
        webauthn_rp_id="localhost",
        webauthn_origin="http://localhost:8000",
    )


@pytest.fixture
def memory_store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "store"))
    ensure_system_roles(store)
    return store


class Services:
    def __init__(self, store: MemoryStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.codec = TokenCodec(settings)
        self.accounts = AccountService(store, settings)
        self.api_keys = ApiKeyService(store, settings, self.codec)
        self.auth = AuthService(store, settings, self.accounts, self.api_keys, codec=self.codec)
        self.passkeys = PasskeyService(store, settings, self.auth)


@pytest.fixture
def make_services(memory_store, settings):
    """Build services over the shared store with selected settings overridden."""

    def _build(**overrides):
        return Services(memory_store, settings.model_copy(update=overrides))

    return _build


@pytest.fixture
def services(memory_store, settings):
    return Services(memory_store, settings)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
