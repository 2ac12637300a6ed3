import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="familyhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("APP_BASE_URL", "http://testserver")
# Rate-limit tests inspect the in-process buckets, so keep Redis out of the picture
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from familyhub.service.runtime import reset_runtime_for_tests  # noqa: E402


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    runtime = reset_runtime_for_tests()
    # Cheap argon2 parameters keep the integration flows fast
    runtime.account._pwd_hasher = fast_hasher()
    runtime.two_factor._hasher = fast_hasher()
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


PASSWORD = "CorrectHorse42!"
ADMIN_PIN = "2468"

OUTBOX_METHODS = (
    "send_email_verification",
    "send_password_reset",
    "send_email_change_verification",
    "send_email_changed_notice",
    "send_two_factor_enabled",
    "send_two_factor_disabled",
    "send_account_linked",
    "send_account_unlinked",
)


@pytest.fixture
def client():
    """Test client for the API; cookies persist across requests."""
    from fastapi.testclient import TestClient

    from familyhub import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    from familyhub.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def outbox(runtime, monkeypatch):
    """Capture outgoing mail instead of logging it."""
    sent = []

    def recorder(kind):
        def send(to_email, *args):
            sent.append({"kind": kind, "to": to_email, "args": args})
            return True

        return send

    for name in OUTBOX_METHODS:
        monkeypatch.setattr(runtime.email, name, recorder(name))
    return sent


def last_mail(outbox, kind):
    for mail in reversed(outbox):
        if mail["kind"] == kind:
            return mail
    raise AssertionError(f"no {kind} mail sent")


def register_household(client, email="owner@example.com", password=PASSWORD, **extra):
    body = {
        "email": email,
        "password": password,
        "family_name": "The Owners",
        "admin_name": "Alex",
        "admin_pin": ADMIN_PIN,
        "locale": "de",
    }
    body.update(extra)
    return client.post("/v1/auth/register", json=body)
