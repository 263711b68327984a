import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from coursegate.config import Settings, reset_settings_cache  # noqa: E402
from coursegate.service.identity import MemoryIdentityDirectory  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
STUDENT_EMAIL = "student@example.com"
STUDENT_PASSWORD = "Correct-Horse-42"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Admin-Password-42"


class FakeClock:
    """Controllable clock; callable for datetimes, ``seconds`` for monotonic use."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def seconds(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float = 0, **kwargs) -> None:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def fast_hasher():
    """Cheap argon2id parameters so hashing does not dominate test time."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def identities(fast_hasher):
    directory = MemoryIdentityDirectory(hasher=fast_hasher)
    directory.add_user(
        STUDENT_EMAIL, STUDENT_PASSWORD, user_id="user-student", display_name="Student"
    )
    directory.add_user(
        ADMIN_EMAIL, ADMIN_PASSWORD, roles=("admin", "teacher"), user_id="user-admin"
    )
    return directory


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
    config.addinivalue_line("markers", "redis: requires a reachable Redis server")
