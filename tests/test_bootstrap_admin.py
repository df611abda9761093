"""Tests for the admin bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from throttlecove.service.runtime import get_runtime
from throttlecove.storage.models import Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,ok",
    [("Adm1n!Passw0rd", True), ("alllowercase1!", True), ("short1!A", False), ("onlylowercase", False)],
)
def test_validate_password(bootstrap, password, ok):
    assert bootstrap.validate_password(password) is ok


async def test_creates_admin_without_live_session(bootstrap):
    result = await bootstrap.bootstrap_admin("root", "root@example.com", "Adm1n!Passw0rd")
    assert result["status"] == "created"
    runtime = get_runtime()
    assert runtime.store.get_user(result["user_id"]).role is Role.ADMIN
    assert runtime.store.list_user_sessions(result["user_id"]) == []


async def test_promotes_existing_user(bootstrap):
    runtime = get_runtime()
    existing = await runtime.auth.register("heidi", "heidi@example.com", "Secret123!", "Heidi")
    result = await bootstrap.bootstrap_admin("someone", "HEIDI@example.com", "Adm1n!Passw0rd")
    assert result == {"user_id": existing.user.id, "username": "heidi", "status": "promoted"}
    again = await bootstrap.bootstrap_admin("heidi", "heidi@example.com", "Adm1n!Passw0rd")
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap.bootstrap_admin("root", "root@example.com", "Adm1n!Passw0rd", dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_username("root") is None
