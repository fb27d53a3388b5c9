import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authbroker_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# SyncRedisCache when Redis is reachable, in-memory cache otherwise
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("IDP_DOMAIN", "idp.test")
os.environ.setdefault("IDP_BASE_URL", "http://idp.test")
os.environ.setdefault("IDP_ISSUER", "http://idp.test/")
os.environ.setdefault("IDP_AUDIENCE", "https://api.test")
os.environ.setdefault("IDP_CLIENT_ID", "test-client")
os.environ.setdefault("IDP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("IDP_CALLBACK_URL", "http://testserver/auth/callback")
os.environ.setdefault("FRONTEND_REDIRECT_URL", "http://app.test/dashboard")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("REFRESH_COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authbroker.service.runtime import reset_runtime_for_tests  # noqa: E402
from idp_stub import IdPStub  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh snapshot directory per test so memory-store state never leaks
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def idp():
    return IdPStub()


@pytest.fixture
def runtime(idp):
    """Runtime whose IdP traffic is served by the stub."""
    return reset_runtime_for_tests(idp_transport=idp.transport)


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
