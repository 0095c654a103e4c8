from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Protocol

import asyncssh

from hft_fleet.common.env import env_float
from hft_fleet.remote.types import RemoteResult

logger = logging.getLogger(__name__)


class SshExecutor(Protocol):
    async def run(self, host: str, command: str, *, private_key: str) -> RemoteResult:
        ...


@dataclass
class AsyncSshExecutor:
    """Runs one shell command per connection under an absolute deadline."""

    username: str = "root"
    timeout_seconds: float = 30.0
    port: int = 22
    known_hosts_path: Optional[str] = None
    _warned_unverified: bool = field(default=False, init=False, repr=False)

    @classmethod
    def from_env(cls) -> "AsyncSshExecutor":
        return cls(
            username=os.getenv("SSH_USER", "root") or "root",
            timeout_seconds=env_float("SSH_TIMEOUT_SECONDS", 30.0, minimum=1.0),
            known_hosts_path=(os.getenv("SSH_KNOWN_HOSTS") or "").strip() or None,
        )

    def known_hosts(self) -> Optional[str]:
        """Path handed to asyncssh; ``None`` disables host key checks and is logged once."""
        if self.known_hosts_path:
            return self.known_hosts_path
        if not self._warned_unverified:
            logger.warning(
                "SSH host key verification is disabled; set SSH_KNOWN_HOSTS to pin fleet host keys",
                extra={"username": self.username},
            )
            self._warned_unverified = True
        return None

    async def _run(self, host: str, command: str, private_key: str) -> RemoteResult:
        key = asyncssh.import_private_key(private_key)
        async with asyncssh.connect(
            host,
            port=self.port,
            username=self.username,
            client_keys=[key],
            known_hosts=self.known_hosts(),
        ) as conn:
            completed = await conn.run(command, check=False)
        stdout = str(completed.stdout or "")
        stderr = str(completed.stderr or "")
        if completed.exit_status not in (0, None):
            return RemoteResult(
                success=False,
                output=stdout,
                error=stderr.strip() or f"exit status {completed.exit_status}",
            )
        return RemoteResult(success=True, output=stdout, error=stderr.strip() or None)

    async def run(self, host: str, command: str, *, private_key: str) -> RemoteResult:
        try:
            return await asyncio.wait_for(self._run(host, command, private_key), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return RemoteResult(success=False, error=f"SSH command timed out after {self.timeout_seconds:.0f}s")
        except asyncssh.KeyImportError as exc:
            return RemoteResult(success=False, error=f"SSH key could not be parsed: {exc}")
        except (asyncssh.Error, OSError) as exc:
            logger.warning("SSH command failed", extra={"host": host, "error": str(exc)})
            return RemoteResult(success=False, error=f"SSH error: {exc}")
