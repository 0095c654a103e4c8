from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

BOT_ROOT = "/opt/hft-bot"
DATA_DIR = f"{BOT_ROOT}/app/data"
START_SIGNAL = f"{DATA_DIR}/START_SIGNAL"
ENV_FILE = f"{BOT_ROOT}/.env.exchanges"
COMPOSE_FILE = f"{BOT_ROOT}/docker-compose.yml"
LOCAL_HEALTH_URL = "http://localhost:8080/health"

DEFAULT_BOT_IMAGE = "hft-bot:latest"

_ENV_NAME_RE = re.compile(r"[^A-Z0-9]")


def exchange_env_prefix(exchange_name: str) -> str:
    return _ENV_NAME_RE.sub("_", exchange_name.upper())


def build_env_payload(
    exchanges: Iterable[Mapping[str, str | None]],
    *,
    trade_mode: str = "SPOT",
) -> dict[str, str]:
    """
    Environment shipped to the agent on start.

    ``exchanges`` are decrypted connections carrying ``exchange_name`` and
    optional ``api_key`` / ``api_secret`` / ``api_passphrase``.
    """
    env = {"STRATEGY_ENABLED": "true", "TRADE_MODE": trade_mode.upper()}
    for exchange in exchanges:
        prefix = exchange_env_prefix(str(exchange.get("exchange_name") or ""))
        if not prefix:
            continue
        for source, suffix in (("api_key", "API_KEY"), ("api_secret", "API_SECRET"), ("api_passphrase", "PASSPHRASE")):
            value = exchange.get(source)
            if value:
                env[f"{prefix}_{suffix}"] = value
    return env


def render_env_file(env: Mapping[str, str]) -> str:
    # one KEY=value per line; a stray newline would split the heredoc
    lines = []
    for key, value in env.items():
        clean = str(value).replace("\r", "").replace("\n", "")
        lines.append(f"{key}={clean}")
    return "\n".join(lines)


def _heredoc(path: str, content: str, marker: str) -> str:
    return f"cat > {path} <<'{marker}'\n{content}\n{marker}\n"


def start_command(env: Mapping[str, str]) -> str:
    return (
        f"mkdir -p {DATA_DIR} && touch {START_SIGNAL} && "
        + _heredoc(ENV_FILE, render_env_file(env), "HFT_ENV")
        + f"cd {BOT_ROOT} && docker compose --env-file .env.exchanges down 2>/dev/null; "
        "docker compose --env-file .env.exchanges up -d --remove-orphans"
    )


def stop_command() -> str:
    return (
        f"rm -f {START_SIGNAL} && cd {BOT_ROOT} && "
        'docker compose down 2>/dev/null || docker stop hft-bot 2>/dev/null || echo "stopped"'
    )


def status_command() -> str:
    return (
        'if docker ps --filter name=hft-bot --format "{{.Status}}" | grep -q "^Up"; '
        'then echo "DOCKER:up"; else echo "DOCKER:down"; fi; '
        f'if [ -f {START_SIGNAL} ]; then echo "SIGNAL:present"; else echo "SIGNAL:absent"; fi; '
        f'echo "HEALTH:$(curl -s -m 5 {LOCAL_HEALTH_URL} 2>/dev/null || echo unreachable)"; '
        'if docker ps --filter name=hft-bot --format "{{.Status}}" | grep -q "^Up"; then '
        f'if [ -f {START_SIGNAL} ]; then echo "STATUS:running"; else echo "STATUS:standby"; fi; '
        'else echo "STATUS:stopped"; fi'
    )


def logs_command(tail_lines: int) -> str:
    tail = max(1, min(int(tail_lines), 5000))
    return (
        f"docker compose -f {COMPOSE_FILE} logs --tail={tail} 2>/dev/null "
        f"|| docker logs hft-bot --tail={tail} 2>/dev/null || echo no_logs"
    )


def health_command() -> str:
    return f"curl -s -m 5 {LOCAL_HEALTH_URL} 2>/dev/null || echo unreachable"


def compose_file(image: str = DEFAULT_BOT_IMAGE) -> str:
    return "\n".join(
        [
            "services:",
            "  hft-bot:",
            f"    image: {image}",
            "    container_name: hft-bot",
            "    env_file:",
            "      - .env.exchanges",
            "    volumes:",
            "      - ./app/data:/app/data",
            "      - ./logs:/app/logs",
            "    restart: always",
            "    network_mode: host",
        ]
    )


def install_command(image: str = DEFAULT_BOT_IMAGE, *, trade_mode: str = "SPOT") -> str:
    """Lay out the compose project and bring the container up unarmed."""
    idle_env = {"STRATEGY_ENABLED": "false", "TRADE_MODE": trade_mode.upper()}
    return (
        f"mkdir -p {DATA_DIR} {BOT_ROOT}/logs && rm -f {START_SIGNAL} && "
        + _heredoc(COMPOSE_FILE, compose_file(image), "HFT_COMPOSE")
        + f"if [ ! -f {ENV_FILE} ]; then "
        + _heredoc(ENV_FILE, render_env_file(idle_env), "HFT_ENV")
        + "fi\n"
        + f"cd {BOT_ROOT} && docker compose pull --quiet 2>/dev/null; "
        "docker compose --env-file .env.exchanges up -d --remove-orphans"
    )


@dataclass(frozen=True)
class StatusReport:
    docker_running: bool
    signal_present: bool
    health_ok: bool
    bot_status: str
    health: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "docker_running": self.docker_running,
            "signal_present": self.signal_present,
            "health_ok": self.health_ok,
            "bot_status": self.bot_status,
            "health": self.health,
        }


def parse_health(raw: str | None) -> tuple[bool, Any]:
    if raw is None:
        return False, None
    text = raw.strip()
    if not text or text == "unreachable":
        return False, None
    try:
        data = json.loads(text)
    except ValueError:
        return False, text
    return health_is_ok(data), data


def health_is_ok(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if "ok" in data:
        return data.get("ok") is True
    return str(data.get("status", "")).lower() in {"ok", "healthy"}


def resolve_bot_status(*, docker_running: bool, signal_present: bool) -> str:
    if docker_running and signal_present:
        return "running"
    if docker_running:
        return "standby"
    if signal_present:
        # armed but the container is gone
        return "error"
    return "stopped"


def parse_status_output(output: str) -> StatusReport:
    """
    Parse the ``DOCKER:`` / ``SIGNAL:`` / ``HEALTH:`` / ``STATUS:`` lines.

    The docker and signal indicators decide the status; the trailing
    ``STATUS:`` line is only used when one of them is missing.
    """
    docker: bool | None = None
    signal: bool | None = None
    health_raw: str | None = None
    status_line: str | None = None
    for line in (output or "").splitlines():
        line = line.strip()
        if line.startswith("DOCKER:"):
            docker = line.split(":", 1)[1].strip().lower() == "up"
        elif line.startswith("SIGNAL:"):
            signal = line.split(":", 1)[1].strip().lower() == "present"
        elif line.startswith("HEALTH:"):
            health_raw = line.split(":", 1)[1]
        elif line.startswith("STATUS:"):
            status_line = line.split(":", 1)[1].strip().lower()
    health_ok, health = parse_health(health_raw)
    if docker is not None and signal is not None:
        bot_status = resolve_bot_status(docker_running=docker, signal_present=signal)
    elif status_line in {"running", "standby", "stopped", "error"}:
        bot_status = status_line
        docker = status_line in {"running", "standby"} if docker is None else docker
        signal = status_line == "running" if signal is None else signal
    else:
        docker = bool(docker)
        signal = bool(signal)
        bot_status = resolve_bot_status(docker_running=docker, signal_present=signal)
    return StatusReport(
        docker_running=bool(docker),
        signal_present=bool(signal),
        health_ok=health_ok,
        bot_status=bot_status,
        health=health,
    )
