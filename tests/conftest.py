import asyncio
import inspect
import os
import re
import sys
import tempfile
from functools import lru_cache
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="uniportal_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "SESSION_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production"
)
# Per-process throttling so buckets are reset together with the runtime
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from uniportal.service.email import EmailService  # noqa: E402
from uniportal.service.runtime import reset_runtime_for_tests  # noqa: E402

PASSWORD = "Correct-Horse-42"

_CODE_RE = re.compile(r"verification code is: (\d{6})")


class RecordingEmail(EmailService):
    """EmailService that keeps outgoing messages instead of sending them."""

    def __init__(self, *, deliver: bool = True) -> None:
        super().__init__()
        self.deliver = deliver
        self.messages: list[dict] = []

    def send(self, to, subject, html, text=None) -> bool:
        self.messages.append({"to": to, "subject": subject, "html": html, "text": text})
        return self.deliver

    def codes_for(self, address: str) -> list[str]:
        found = []
        for message in self.messages:
            if message["to"] != address or not message["text"]:
                continue
            match = _CODE_RE.search(message["text"])
            if match:
                found.append(match.group(1))
        return found

    def last_code(self, address: str) -> str:
        codes = self.codes_for(address)
        assert codes, f"no verification code was sent to {address}"
        return codes[-1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    from uniportal.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def sender():
    return RecordingEmail()


@pytest.fixture
def failing_sender():
    return RecordingEmail(deliver=False)


@pytest.fixture
def outbox(runtime):
    """Route every email of the current runtime into a RecordingEmail."""
    recorder = RecordingEmail()
    runtime.email = recorder
    runtime.otp.sender = recorder
    runtime.auth.email = recorder
    return recorder


@lru_cache(maxsize=None)
def _password_hash(password: str) -> str:
    return PasswordHasher(type=Type.ID).hash(password)


def seed_account(
    runtime,
    username: str,
    email: str,
    *,
    password: str = PASSWORD,
    role: str = "student",
    is_active: bool = True,
    mfa: bool = False,
):
    return runtime.store.create_account(
        username,
        email,
        _password_hash(password),
        role=role,
        is_active=is_active,
        mfa_email_enabled=mfa,
    )


@pytest.fixture
def accounts(runtime):
    """Seed one account per portal role plus an MFA user and a disabled user."""
    return {
        "admin": seed_account(runtime, "registrar", "registrar@uni.example", role="admin"),
        "instructor": seed_account(
            runtime, "ada.okafor", "ada.okafor@uni.example", role="instructor"
        ),
        "student": seed_account(runtime, "lin.zhou", "lin.zhou@uni.example"),
        "mfa": seed_account(
            runtime, "kwame.mensah", "kwame.mensah@uni.example", mfa=True
        ),
        "disabled": seed_account(
            runtime, "old.account", "old.account@uni.example", is_active=False
        ),
    }


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
