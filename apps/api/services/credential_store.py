"""Gateway to the external shared registry of valid credential secrets."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Set, Tuple

from config import settings

logger = logging.getLogger(__name__)


class CredentialStoreError(RuntimeError):
    """Base class for credential store failures."""


class CredentialAlreadyExistsError(CredentialStoreError):
    """Raised when adding a secret the registry already holds."""


class CredentialStoreUnavailableError(CredentialStoreError):
    """Raised when the registry timed out, could not be spawned or failed."""


class CredentialStore(ABC):
    @abstractmethod
    async def exists(self, secret: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def add(self, secret: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, secret: str) -> None:
        """Remove a secret; removing an absent secret succeeds."""
        raise NotImplementedError


class PasswordManagerCredentialStore(CredentialStore):
    """Drives the password-manager executable: ``<exe> check|add|del <secret>``."""

    def __init__(self, *, executable: str, timeout_seconds: float = 10.0) -> None:
        self.executable = executable
        self.timeout_seconds = max(float(timeout_seconds), 0.1)

    async def _run(self, command: str, secret: str) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                command,
                secret,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CredentialStoreUnavailableError(f"cannot start {self.executable}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise CredentialStoreUnavailableError(
                f"{command} timed out after {self.timeout_seconds:.1f}s"
            ) from exc

        return (
            int(process.returncode or 0),
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def exists(self, secret: str) -> bool:
        returncode, stdout, stderr = await self._run("check", secret)
        if stdout == "EXISTS":
            return True
        if returncode not in (0, 1):
            raise CredentialStoreUnavailableError(f"check failed ({returncode}): {stderr or stdout}")
        return False

    async def add(self, secret: str) -> None:
        returncode, stdout, stderr = await self._run("add", secret)
        if returncode == 0:
            return
        message = stderr or stdout or f"exit code {returncode}"
        if "exist" in message.lower():
            raise CredentialAlreadyExistsError(message)
        raise CredentialStoreUnavailableError(f"add failed: {message}")

    async def remove(self, secret: str) -> None:
        returncode, stdout, stderr = await self._run("del", secret)
        if returncode == 0:
            return
        message = (stderr or stdout or f"exit code {returncode}").lower()
        if "not found" in message or "not exist" in message:
            logger.info("Credential manager reports secret already absent")
            return
        raise CredentialStoreUnavailableError(f"del failed: {message}")


class InMemoryCredentialStore(CredentialStore):
    """Process-local registry for development and single-node demos."""

    def __init__(self) -> None:
        self.secrets: Set[str] = set()

    async def exists(self, secret: str) -> bool:
        return secret in self.secrets

    async def add(self, secret: str) -> None:
        if secret in self.secrets:
            raise CredentialAlreadyExistsError(secret)
        self.secrets.add(secret)

    async def remove(self, secret: str) -> None:
        self.secrets.discard(secret)


def build_credential_store() -> CredentialStore:
    backend = (settings.CREDENTIAL_STORE_BACKEND or "").strip().lower()
    if backend == "memory":
        return InMemoryCredentialStore()
    return PasswordManagerCredentialStore(
        executable=settings.CREDENTIAL_MANAGER_PATH,
        timeout_seconds=settings.CREDENTIAL_STORE_TIMEOUT_SECONDS,
    )
