import os
import stat

import pytest

from services.credential_store import (
    CredentialAlreadyExistsError,
    CredentialStoreUnavailableError,
    InMemoryCredentialStore,
    PasswordManagerCredentialStore,
)


FAKE_MANAGER = """#!/bin/sh
DB="$(dirname "$0")/secrets.txt"
touch "$DB"
case "$1" in
  check)
    if grep -qxF "$2" "$DB"; then echo EXISTS; else echo NOT_FOUND; fi
    ;;
  add)
    if grep -qxF "$2" "$DB"; then echo "password already exists" >&2; exit 1; fi
    echo "$2" >> "$DB"
    ;;
  del)
    if ! grep -qxF "$2" "$DB"; then echo "password not found" >&2; exit 1; fi
    grep -vxF "$2" "$DB" > "$DB.tmp"
    mv "$DB.tmp" "$DB"
    ;;
  *)
    echo "usage" >&2
    exit 2
    ;;
esac
"""


def _write_script(path, body):
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def manager(tmp_path):
    executable = _write_script(tmp_path / "passwd-manager", FAKE_MANAGER)
    return PasswordManagerCredentialStore(executable=executable, timeout_seconds=5)


@pytest.mark.asyncio
async def test_password_manager_add_check_remove(manager):
    assert await manager.exists("abc123") is False
    await manager.add("abc123")
    assert await manager.exists("abc123") is True

    with pytest.raises(CredentialAlreadyExistsError):
        await manager.add("abc123")

    await manager.remove("abc123")
    assert await manager.exists("abc123") is False


@pytest.mark.asyncio
async def test_password_manager_remove_of_absent_secret_succeeds(manager):
    await manager.remove("never-added")


@pytest.mark.asyncio
async def test_password_manager_timeout_is_unavailable(tmp_path):
    executable = _write_script(tmp_path / "slow-manager", "#!/bin/sh\nsleep 5\n")
    store = PasswordManagerCredentialStore(executable=executable, timeout_seconds=0.2)
    with pytest.raises(CredentialStoreUnavailableError):
        await store.add("abc123")


@pytest.mark.asyncio
async def test_password_manager_failure_exit_is_unavailable(tmp_path):
    executable = _write_script(tmp_path / "broken-manager", "#!/bin/sh\necho 'disk full' >&2\nexit 3\n")
    store = PasswordManagerCredentialStore(executable=executable)
    with pytest.raises(CredentialStoreUnavailableError):
        await store.exists("abc123")
    with pytest.raises(CredentialStoreUnavailableError):
        await store.add("abc123")
    with pytest.raises(CredentialStoreUnavailableError):
        await store.remove("abc123")


@pytest.mark.asyncio
async def test_missing_executable_is_unavailable(tmp_path):
    store = PasswordManagerCredentialStore(executable=os.fspath(tmp_path / "does-not-exist"))
    with pytest.raises(CredentialStoreUnavailableError):
        await store.exists("abc123")


@pytest.mark.asyncio
async def test_in_memory_store_contract():
    store = InMemoryCredentialStore()
    await store.add("abc123")
    with pytest.raises(CredentialAlreadyExistsError):
        await store.add("abc123")
    assert await store.exists("abc123") is True
    await store.remove("abc123")
    await store.remove("abc123")
    assert await store.exists("abc123") is False
