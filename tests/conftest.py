import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="asphaltworks_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MEMORY_STORE_PERSIST", "false")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ADMIN_NOTIFICATION_EMAIL", "admin-inbox@example.com")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from asphaltworks.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "Asphalt@2024"
NEW_PASSWORD = "Bitume$2025"

_TOKEN_IN_LINK = re.compile(r"/(verify-email|reset-password)/([a-f0-9]+)")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    """Test client bound to the app."""
    from fastapi.testclient import TestClient

    from asphaltworks import app as app_module

    return TestClient(app_module.app)


class Outbox(list):
    """Emails captured from the runtime's EmailService."""

    def flush(self) -> "Outbox":
        get_runtime().mailer.flush()
        return self

    def to(self, address: str) -> list:
        self.flush()
        return [m for m in self if m["to"] == address]

    def token(self, address: str, kind: str) -> str:
        """Last ``verify-email`` or ``reset-password`` token mailed to ``address``."""
        for message in reversed(self.to(address)):
            match = _TOKEN_IN_LINK.search(message["text"] or "")
            if match and match.group(1) == kind:
                return match.group(2)
        raise AssertionError(f"no {kind} email sent to {address}")


@pytest.fixture
def outbox(monkeypatch):
    sent = Outbox()

    def _capture(to_email, subject, html_body, text_body=None):
        sent.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body})
        return True

    monkeypatch.setattr(get_runtime().email, "_send_email", _capture)
    return sent


@pytest.fixture
def make_user():
    """Create a user straight in the store, bypassing the HTTP layer."""

    def _make(
        username: str = "alice",
        email: str = "alice@example.com",
        password: str = PASSWORD,
        *,
        role: str = "user",
        verified: bool = True,
        **profile,
    ):
        runtime = get_runtime()
        profile.setdefault("first_name", username.capitalize())
        profile.setdefault("last_name", "Martin")
        user = runtime.store.create_user(
            username, email, role=role, is_email_verified=verified, **profile
        )
        runtime.store.save_password(user.id, *runtime.credentials.hash(password))
        return user

    return _make


@pytest.fixture
def login(client):
    """Log in through the API and return bearer headers."""

    def _login(email: str = "alice@example.com", password: str = PASSWORD) -> dict:
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['data']['token']}"}

    return _login


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
