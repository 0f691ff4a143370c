import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fakeredis import FakeServer  # noqa: E402
from fakeredis.aioredis import FakeRedis  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings, reset_settings_cache  # noqa: E402
from sessionguard.service.auth import AuthService  # noqa: E402
from sessionguard.storage.kv import KeyValueStore  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "CorrectHorse42!"

CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX_UA = (
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def kv(fake_server):
    client = FakeRedis(server=fake_server, decode_responses=True)
    return KeyValueStore(client, operation_timeout=1.0)


@pytest.fixture
def down_kv():
    """Adapter whose store refuses every connection."""
    server = FakeServer()
    server.connected = False
    client = FakeRedis(server=server, decode_responses=True)
    return KeyValueStore(client, operation_timeout=0.5)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Refresh-Secret-Key_for-Automation-Only-123456789!",
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def password_hasher():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def auth_service(memory_store, kv, settings, password_hasher):
    return AuthService(memory_store, kv, settings, password_hasher=password_hasher)


@pytest.fixture
def test_user(memory_store, auth_service):
    user = memory_store.create_user("a@example.com", first_name="Ada", last_name="Lovelace")
    auth_service.save_password(user.id, TEST_PASSWORD)
    return memory_store.get_user(user.id)


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
