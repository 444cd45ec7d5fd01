import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="fleetauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fleetauth.config import SecurityConfig, Settings, StaticConfigSource  # noqa: E402
from fleetauth.service.auth import AuthService  # noqa: E402
from fleetauth.service.password_policy import SecretHasher  # noqa: E402
from fleetauth.storage.memory import MemoryStore  # noqa: E402
from fleetauth.storage.models import AccountKind, Role  # noqa: E402

STANDARD_PASSWORD = "Fleet-Pass-2024"
DRIVER_PIN = "4821"


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def force_logout(self, identity_key, reason):
        self.calls.append((identity_key, reason))


class RecordingMessenger:
    def __init__(self):
        self.sent = []

    async def send(self, destination, template_kind, data):
        self.sent.append((destination, template_kind, data))
        return True

    def last(self, template_kind):
        matches = [s for s in self.sent if s[1] == template_kind]
        return matches[-1] if matches else None


@pytest.fixture
def settings():
    """Test settings with cheap argon2 parameters."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Key_for-Automation-Only-123456789!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def hasher(settings):
    return SecretHasher.from_settings(settings)


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key")


@pytest.fixture
def security_config():
    return SecurityConfig()


@pytest.fixture
def config_source(security_config):
    return StaticConfigSource(security_config)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def auth_service(memory_store, settings, hasher, config_source, audit_sink, notifier, messenger):
    """Auth service wired to recording collaborators."""
    return AuthService(
        memory_store,
        settings,
        config_source=config_source,
        hasher=hasher,
        audit=audit_sink,
        notifier=notifier,
        messenger=messenger,
    )


@pytest.fixture
def standard_account(memory_store, hasher):
    return memory_store.create_account(
        AccountKind.STANDARD_USER,
        "jdoe",
        hasher.hash(STANDARD_PASSWORD),
        display_name="Jane Doe",
        role=Role.MANAGER,
        email="jdoe@example.com",
        phone="+255700000001",
    )


@pytest.fixture
def driver_account(memory_store, hasher):
    return memory_store.create_account(
        AccountKind.DRIVER,
        "T991 EFN",
        hasher.hash(DRIVER_PIN),
        display_name="Truck T991 EFN",
        role=Role.DRIVER,
    )


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
