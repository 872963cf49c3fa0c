import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any import that builds Settings or the runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BCRYPT_SALT_ROUNDS", "4")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("BOOTSTRAP_ADMIN", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from cajauth.config import Settings  # noqa: E402
from cajauth.service.runtime import reset_runtime_for_tests  # noqa: E402


TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def make_settings(**overrides) -> Settings:
    """Settings for unit tests that bypass the environment."""
    values = dict(
        environment="test",
        jwt_secret=TEST_SECRET,
        bcrypt_rounds=4,
        use_memory_store=True,
        cookie_secure=False,
        bootstrap_admin=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
