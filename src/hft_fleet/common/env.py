import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def init_env() -> None:
    """
    Load environment variables from the project .env file.

    - Find project root by walking up from this file until pyproject.toml is found.
    - Load {root}/.env via python-dotenv.
    - Idempotent and safe to call multiple times.
    """
    here = Path(__file__).resolve()
    root = here
    while root != root.parent and not (root / "pyproject.toml").exists():
        root = root.parent

    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.info(".env file not found at %s; using existing process env only", env_path)


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    if parsed < minimum:
        return minimum
    return parsed


def env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    if parsed < minimum:
        return minimum
    return parsed
