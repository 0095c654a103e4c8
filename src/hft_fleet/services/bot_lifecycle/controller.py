from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.env import env_float
from hft_fleet.common.errors import FleetError, Permanent, Transient
from hft_fleet.common.models import Deployment, Machine
from hft_fleet.remote.executor import RemoteExecutor
from hft_fleet.remote.types import RemoteResult
from hft_fleet.services.bot_lifecycle import commands
from hft_fleet.services.exchange_credentials import connected_exchange_credentials
from hft_fleet.store.fleet import find_deployment, get_trading_config, sync_bot_status
from hft_fleet.store.timeline import append_timeline_event

logger = logging.getLogger(__name__)


@dataclass
class BotLifecycleController:
    """
    Start, stop and inspect the trading container on a deployment's machine.

    Every state-changing call ends by writing the same ``bot_status`` and
    ``updated_at`` to the deployment, its machine and the global trading
    config, then committing.
    """

    executor: RemoteExecutor = field(default_factory=RemoteExecutor)
    settle_seconds: float = 5.0
    poll_interval_seconds: float = 1.0
    restart_pause_seconds: float = 2.0
    trade_mode: str = "SPOT"
    bot_image: str = commands.DEFAULT_BOT_IMAGE
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "BotLifecycleController":
        return cls(
            executor=RemoteExecutor.from_env(transport=transport),
            settle_seconds=env_float("BOT_HEALTH_SETTLE_SECONDS", 5.0, minimum=0.0),
            trade_mode=os.getenv("BOT_TRADE_MODE", "SPOT") or "SPOT",
            bot_image=os.getenv("BOT_IMAGE", commands.DEFAULT_BOT_IMAGE) or commands.DEFAULT_BOT_IMAGE,
        )

    async def _load(self, session: AsyncSession, deployment_ref: str) -> tuple[Deployment, Machine]:
        deployment = await find_deployment(session, deployment_ref)
        machine = await session.get(Machine, deployment.machine_id)
        if machine is None:
            raise Permanent(f"Deployment {deployment.id} has no machine")
        if machine.status == "destroyed":
            raise Permanent(f"Machine {machine.id} is destroyed", details={"machine_id": str(machine.id)})
        if not machine.ip_address:
            raise Permanent(f"Machine {machine.id} has no IP address yet", details={"machine_id": str(machine.id)})
        return deployment, machine

    def _ssh_key_ref(self, deployment: Deployment, machine: Machine):
        return deployment.ssh_key_ref or machine.ssh_key_ref

    async def _mode(self, session: AsyncSession) -> str:
        config = await get_trading_config(session)
        return "paper" if config.test_mode else "live"

    async def _record(
        self,
        session: AsyncSession,
        deployment: Deployment,
        machine: Machine,
        *,
        action: str,
        bot_status: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        stamp = await sync_bot_status(
            session,
            deployment=deployment,
            machine=machine,
            bot_status=bot_status,
            trading_enabled=bot_status == "running",
        )
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="bot_lifecycle",
            event_subtype=action,
            title=f"Bot {action}: {bot_status}",
            description=description,
            metadata={"deployment_id": deployment.id, "machine_id": machine.id, **(metadata or {})},
        )
        await session.commit()
        return stamp

    async def _fail(
        self,
        session: AsyncSession,
        deployment: Deployment,
        machine: Machine,
        *,
        action: str,
        error: str,
        exc: FleetError | None = None,
    ) -> None:
        logger.error(
            "Bot %s failed",
            action,
            extra={"deployment_id": str(deployment.id), "machine_id": str(machine.id), "error": error},
        )
        await self._record(session, deployment, machine, action=action, bot_status="error", description=error)
        if exc is not None:
            raise exc
        raise Transient(f"Bot {action} failed: {error}", details={"deployment_id": str(deployment.id)})

    async def _dispatch(
        self,
        session: AsyncSession,
        deployment: Deployment,
        machine: Machine,
        *,
        action: str,
        env: dict[str, str],
        ssh_command: str,
    ) -> RemoteResult:
        try:
            result = await self.executor.control_or_ssh(
                session,
                ip_address=machine.ip_address,
                ssh_key_ref=self._ssh_key_ref(deployment, machine),
                action=action,
                mode=await self._mode(session),
                env=env,
                ssh_command=ssh_command,
            )
        except FleetError as exc:
            await self._fail(session, deployment, machine, action=action, error=str(exc), exc=exc)
        if not result.success:
            await self._fail(session, deployment, machine, action=action, error=result.error or "remote command failed")
        return result

    async def _health_once(self, session: AsyncSession, deployment: Deployment, machine: Machine, *, via_ssh: bool) -> tuple[bool, Any]:
        check = await self.executor.control.health(machine.ip_address)
        if check.ok:
            return True, check.data
        if not via_ssh:
            return False, check.data
        result = await self.executor.run_ssh(
            session,
            ip_address=machine.ip_address,
            ssh_key_ref=self._ssh_key_ref(deployment, machine),
            command=commands.health_command(),
        )
        if not result.success:
            return False, None
        return commands.parse_health(result.output)

    async def _await_health(self, session: AsyncSession, deployment: Deployment, machine: Machine, *, via_ssh: bool) -> bool:
        deadline = self.clock() + self.settle_seconds
        while True:
            healthy, _ = await self._health_once(session, deployment, machine, via_ssh=via_ssh)
            if healthy:
                return True
            if self.clock() >= deadline:
                return False
            await self.sleep(self.poll_interval_seconds)

    async def _start_on(self, session: AsyncSession, deployment: Deployment, machine: Machine, *, action: str) -> dict[str, Any]:
        env = commands.build_env_payload(await connected_exchange_credentials(session), trade_mode=self.trade_mode)
        await sync_bot_status(session, deployment=deployment, machine=machine, bot_status="starting", trading_enabled=False)
        await session.commit()
        result = await self._dispatch(
            session,
            deployment,
            machine,
            action="start",
            env=env,
            ssh_command=commands.start_command(env),
        )
        try:
            verified = await self._await_health(session, deployment, machine, via_ssh=result.transport == "ssh")
        except FleetError as exc:
            await self._fail(session, deployment, machine, action=action, error=str(exc), exc=exc)
        bot_status = "running" if verified else "error"
        if not verified:
            logger.warning(
                "Bot did not report healthy within the settle window",
                extra={"deployment_id": str(deployment.id), "settle_seconds": self.settle_seconds},
            )
        stamp = await self._record(
            session,
            deployment,
            machine,
            action=action,
            bot_status=bot_status,
            metadata={"transport": result.transport, "health_verified": verified},
        )
        logger.info(
            "Bot %s completed",
            action,
            extra={"deployment_id": str(deployment.id), "bot_status": bot_status, "transport": result.transport},
        )
        return {
            "deployment_id": str(deployment.id),
            "bot_status": bot_status,
            "health_verified": verified,
            "transport": result.transport,
            "updated_at": stamp.isoformat(),
        }

    async def start(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        deployment, machine = await self._load(session, deployment_ref)
        return await self._start_on(session, deployment, machine, action="start")

    async def stop(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        deployment, machine = await self._load(session, deployment_ref)
        result = await self._dispatch(
            session,
            deployment,
            machine,
            action="stop",
            env={"STRATEGY_ENABLED": "false"},
            ssh_command=commands.stop_command(),
        )
        stamp = await self._record(
            session, deployment, machine, action="stop", bot_status="stopped", metadata={"transport": result.transport}
        )
        return {
            "deployment_id": str(deployment.id),
            "bot_status": "stopped",
            "transport": result.transport,
            "updated_at": stamp.isoformat(),
        }

    async def restart(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        deployment, machine = await self._load(session, deployment_ref)
        await self._dispatch(
            session,
            deployment,
            machine,
            action="stop",
            env={"STRATEGY_ENABLED": "false"},
            ssh_command=commands.stop_command(),
        )
        await self.sleep(self.restart_pause_seconds)
        return await self._start_on(session, deployment, machine, action="restart")

    async def install(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        """Install the compose project over SSH; the container comes up unarmed."""
        deployment, machine = await self._load(session, deployment_ref)
        try:
            result = await self.executor.run_ssh(
                session,
                ip_address=machine.ip_address,
                ssh_key_ref=self._ssh_key_ref(deployment, machine),
                command=commands.install_command(self.bot_image, trade_mode=self.trade_mode),
            )
        except FleetError as exc:
            await self._fail(session, deployment, machine, action="install", error=str(exc), exc=exc)
        if not result.success:
            await self._fail(session, deployment, machine, action="install", error=result.error or "install failed")
        stamp = await self._record(session, deployment, machine, action="install", bot_status="standby")
        return {"deployment_id": str(deployment.id), "bot_status": "standby", "updated_at": stamp.isoformat()}

    async def _observe(self, session: AsyncSession, deployment: Deployment, machine: Machine) -> tuple[commands.StatusReport, str]:
        health = await self.executor.control.health(machine.ip_address)
        bot = await self.executor.control.bot_status(machine.ip_address)
        if bot.ok and isinstance(bot.data, dict) and "running" in bot.data:
            armed = bool(bot.data.get("running"))
            container_up = health.ok or armed
            report = commands.StatusReport(
                docker_running=container_up,
                signal_present=armed,
                health_ok=health.ok,
                bot_status=commands.resolve_bot_status(docker_running=container_up, signal_present=armed),
                health=health.data,
            )
            return report, "http"
        result = await self.executor.run_ssh(
            session,
            ip_address=machine.ip_address,
            ssh_key_ref=self._ssh_key_ref(deployment, machine),
            command=commands.status_command(),
        )
        if not result.success:
            raise Transient(
                f"Bot status unavailable: {result.error or 'ssh failed'}",
                details={"deployment_id": str(deployment.id)},
            )
        return commands.parse_status_output(result.output), "ssh"

    async def status(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        """Observe the host and reconcile the stored status when it drifted."""
        deployment, machine = await self._load(session, deployment_ref)
        report, transport = await self._observe(session, deployment, machine)
        if report.bot_status != deployment.bot_status:
            logger.info(
                "Reconciling drifted bot status",
                extra={"deployment_id": str(deployment.id), "stored": deployment.bot_status, "observed": report.bot_status},
            )
            await self._record(
                session,
                deployment,
                machine,
                action="reconcile",
                bot_status=report.bot_status,
                metadata={"previous": deployment.bot_status, "transport": transport},
            )
        return {"deployment_id": str(deployment.id), "transport": transport, **report.as_dict()}

    async def logs(self, session: AsyncSession, deployment_ref: str, tail_lines: int = 100) -> dict[str, Any]:
        deployment, machine = await self._load(session, deployment_ref)
        result = await self.executor.run_ssh(
            session,
            ip_address=machine.ip_address,
            ssh_key_ref=self._ssh_key_ref(deployment, machine),
            command=commands.logs_command(tail_lines),
        )
        if not result.success:
            raise Transient(f"Could not read bot logs: {result.error}", details={"deployment_id": str(deployment.id)})
        lines = result.output.splitlines()[-max(1, tail_lines):]
        return {"deployment_id": str(deployment.id), "lines": lines}

    async def health(self, session: AsyncSession, deployment_ref: str) -> dict[str, Any]:
        deployment, machine = await self._load(session, deployment_ref)
        check = await self.executor.control.health(machine.ip_address)
        if check.ok:
            return {"deployment_id": str(deployment.id), "reachable": True, "transport": "http", "health": check.data}
        healthy, data = False, None
        try:
            result = await self.executor.run_ssh(
                session,
                ip_address=machine.ip_address,
                ssh_key_ref=self._ssh_key_ref(deployment, machine),
                command=commands.health_command(),
            )
        except FleetError as exc:
            logger.warning("SSH health probe unavailable", extra={"deployment_id": str(deployment.id), "error": str(exc)})
        else:
            if result.success:
                healthy, data = commands.parse_health(result.output)
        if data is None:
            return {"deployment_id": str(deployment.id), "reachable": False, "transport": "ssh", "health": "unreachable"}
        return {"deployment_id": str(deployment.id), "reachable": healthy, "transport": "ssh", "health": data}
