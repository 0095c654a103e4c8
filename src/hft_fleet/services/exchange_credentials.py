from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import NoCredentials
from hft_fleet.common.models import ExchangeConnection
from hft_fleet.remote.crypto import decrypt_optional
from hft_fleet.store.fleet import get_exchange_connection, list_connected_exchanges

logger = logging.getLogger(__name__)


def decrypt_connection(connection: ExchangeConnection) -> dict[str, Any]:
    return {
        "exchange_name": connection.exchange_name,
        "api_key": decrypt_optional(connection.api_key_encrypted),
        "api_secret": decrypt_optional(connection.api_secret_encrypted),
        "api_passphrase": decrypt_optional(connection.api_passphrase_encrypted),
    }


async def connected_exchange_credentials(session: AsyncSession) -> list[dict[str, Any]]:
    """Decrypted credentials for every connected exchange; undecryptable rows are skipped."""
    decrypted = []
    for connection in await list_connected_exchanges(session):
        try:
            decrypted.append(decrypt_connection(connection))
        except NoCredentials as exc:
            logger.warning(
                "Skipping exchange with undecryptable credentials",
                extra={"exchange": connection.exchange_name, "error": str(exc)},
            )
    if not decrypted:
        logger.warning("No connected exchanges with usable credentials")
    return decrypted


async def require_exchange_credentials(session: AsyncSession, exchange: str) -> dict[str, Any]:
    connection = await get_exchange_connection(session, exchange)
    if connection is None or not connection.is_connected:
        raise NoCredentials(f"No connected credentials for exchange {exchange}", details={"exchange": exchange})
    creds = decrypt_connection(connection)
    if not creds["api_key"] or not creds["api_secret"]:
        raise NoCredentials(f"Incomplete credentials for exchange {exchange}", details={"exchange": exchange})
    return creds
