import importlib.util
from pathlib import Path

import pytest

from uniportal.storage.memory import MemoryStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "candidate,ok",
    [
        ("Registrar-2026!", True),
        ("registrar2026x", False),
        ("Short1!", False),
        ("lowercaseUPPER1", True),
    ],
)
def test_validate_password(bootstrap, candidate, ok):
    assert bootstrap.validate_password(candidate) is ok


def test_creates_admin(bootstrap):
    store = MemoryStore()
    result = bootstrap.bootstrap_admin(
        store, "registrar", "registrar@uni.example", "Registrar-2026!", mfa=True
    )
    assert result["status"] == "created"
    account = store.get_account(result["account_id"])
    assert account.role == "admin"
    assert account.mfa_email_enabled is True
    assert account.password_hash.startswith("$argon2id$")


def test_promotes_existing_account(bootstrap):
    store = MemoryStore()
    existing = store.create_account(
        "ada.okafor", "ada.okafor@uni.example", "hash", role="instructor", is_active=False
    )
    result = bootstrap.bootstrap_admin(
        store, "ada.okafor", "ada.okafor@uni.example", "Registrar-2026!"
    )
    assert result["status"] == "promoted"
    account = store.get_account(existing.id)
    assert account.role == "admin"
    assert account.is_active is True


def test_existing_admin_untouched(bootstrap):
    store = MemoryStore()
    store.create_account("registrar", "registrar@uni.example", "hash", role="admin")
    result = bootstrap.bootstrap_admin(
        store, "registrar", "registrar@uni.example", "Registrar-2026!"
    )
    assert result["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    store = MemoryStore()
    result = bootstrap.bootstrap_admin(
        store, "registrar", "registrar@uni.example", "Registrar-2026!", dry_run=True
    )
    assert result["status"] == "dry_run"
    assert store.accounts == {}
