from __future__ import annotations

import logging
import os
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import NoCredentials
from hft_fleet.common.models import SshKey
from hft_fleet.remote.crypto import decrypt_secret

logger = logging.getLogger(__name__)


def _fallback_key() -> str | None:
    value = os.getenv("SSH_FALLBACK_PRIVATE_KEY")
    if not value:
        return None
    # single-line env values carry literal \n sequences
    return value.replace("\\n", "\n").strip() + "\n"


async def resolve_private_key(session: AsyncSession, ssh_key_ref: uuid.UUID | None) -> str:
    """
    Return a PEM/OpenSSH private key for an SSH session.

    Order: the encrypted blob stored under ``ssh_key_ref``, then the
    process-level ``SSH_FALLBACK_PRIVATE_KEY``; otherwise ``NoCredentials``.
    """
    if ssh_key_ref is not None:
        blob = await session.scalar(select(SshKey.private_key_encrypted).where(SshKey.id == ssh_key_ref))
        if blob:
            try:
                return decrypt_secret(blob)
            except NoCredentials as exc:
                logger.warning(
                    "Stored SSH key could not be decrypted; trying fallback key",
                    extra={"ssh_key_ref": str(ssh_key_ref), "error": str(exc)},
                )
    fallback = _fallback_key()
    if fallback:
        return fallback
    raise NoCredentials(
        "No usable SSH private key",
        details={"ssh_key_ref": str(ssh_key_ref) if ssh_key_ref else None},
    )
