from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import Permanent
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.remote.keys import resolve_private_key
from hft_fleet.remote.ssh import AsyncSshExecutor, SshExecutor
from hft_fleet.remote.types import RemoteResult

logger = logging.getLogger(__name__)


@dataclass
class RemoteExecutor:
    """HTTP control first, SSH second; both paths return a ``RemoteResult``."""

    control: AgentControlClient = field(default_factory=AgentControlClient)
    ssh: SshExecutor = field(default_factory=AsyncSshExecutor)

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "RemoteExecutor":
        return cls(control=AgentControlClient.from_env(transport=transport), ssh=AsyncSshExecutor.from_env())

    async def run_ssh(
        self,
        session: AsyncSession,
        *,
        ip_address: str | None,
        ssh_key_ref: uuid.UUID | None,
        command: str,
    ) -> RemoteResult:
        if not ip_address:
            raise Permanent("Machine has no IP address yet")
        private_key = await resolve_private_key(session, ssh_key_ref)
        return await self.ssh.run(ip_address, command, private_key=private_key)

    async def control_or_ssh(
        self,
        session: AsyncSession,
        *,
        ip_address: str | None,
        ssh_key_ref: uuid.UUID | None,
        action: str,
        mode: str,
        env: dict[str, str],
        ssh_command: str,
    ) -> RemoteResult:
        if not ip_address:
            raise Permanent("Machine has no IP address yet")
        check = await self.control.control(ip_address, action=action, mode=mode, env=env)
        if check.ok:
            return RemoteResult(
                success=True,
                output=json.dumps(check.data, default=str) if check.data is not None else "",
                transport="http",
                data=check.data,
            )
        logger.warning(
            "HTTP control unavailable; falling back to SSH",
            extra={"ip_address": ip_address, "action": action, "control_error": check.error},
        )
        return await self.run_ssh(
            session,
            ip_address=ip_address,
            ssh_key_ref=ssh_key_ref,
            command=ssh_command,
        )
