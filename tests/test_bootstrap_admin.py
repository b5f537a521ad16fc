import importlib.util
from pathlib import Path

import pytest

from gatehouse.service.runtime import get_runtime
from gatehouse.storage.models import AuthMethod, UserRole

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_verified_admin(bootstrap):
    runtime = get_runtime()

    result = bootstrap("Admin@Example.com", "admin-pass", "Root")

    assert result["status"] == "created"
    user = runtime.store.find_user_by_email("admin@example.com")
    assert user.role is UserRole.ADMIN
    assert user.auth_method is AuthMethod.CREDENTIALS
    assert user.is_verified is True
    assert user.password_hash != "admin-pass"


async def test_created_admin_can_log_in(bootstrap):
    runtime = get_runtime()
    bootstrap("admin@example.com", "admin-pass")

    outcome = await runtime.auth.login(
        "admin@example.com", "admin-pass", session=runtime.session_handle()
    )
    assert outcome.ok


def test_promotes_existing_user(bootstrap):
    runtime = get_runtime()
    user = runtime.store.create_user(email="user@example.com", display_name="U")

    assert bootstrap("user@example.com", "ignored")["status"] == "promoted"
    assert runtime.store.find_user_by_id(user.id).role is UserRole.ADMIN
    assert bootstrap("user@example.com", "ignored")["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    runtime = get_runtime()

    result = bootstrap("admin@example.com", "admin-pass", dry_run=True)

    assert result == {"user_id": None, "email": "admin@example.com", "status": "dry_run"}
    assert runtime.store.find_user_by_email("admin@example.com") is None
