from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import NoCredentials, Permanent
from hft_fleet.providers.registry import adapter_class, get_provider_adapter, normalize_provider
from hft_fleet.remote.crypto import decrypt_secret, encrypt_secret
from hft_fleet.store.credentials import list_credentials, mark_credentials_validated, save_credential
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)


async def save_provider_credentials(
    session: AsyncSession,
    provider: str,
    fields: Dict[str, str],
    *,
    expected_updated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    name = normalize_provider(provider)
    schema = {f.field_name: f for f in adapter_class(name).credential_fields}
    unknown = sorted(set(fields) - set(schema))
    if unknown:
        raise Permanent(f"Unknown credential fields for {name}: {', '.join(unknown)}", details={"fields": unknown})
    saved: List[Dict[str, Any]] = []
    for field_name, value in fields.items():
        if value is None or not str(value).strip():
            continue
        # multi-line secrets (PEM keys, service-account JSON) keep their newlines
        plain = str(value) if schema[field_name].is_textarea else str(value).strip()
        row, created = await save_credential(
            session,
            provider=name,
            field_name=field_name,
            encrypted_value=encrypt_secret(plain),
            expected_updated_at=expected_updated_at,
        )
        saved.append({"field_name": field_name, "created": created, "updated_at": row.updated_at})
    await session.commit()
    logger.info("Provider credentials saved", extra={"provider": name, "fields": [s["field_name"] for s in saved]})
    return json_safe({"success": True, "provider": name, "fields": saved})


async def load_provider_credentials(session: AsyncSession, provider: str) -> Dict[str, str]:
    name = normalize_provider(provider)
    rows = await list_credentials(session, name)
    if not rows:
        raise NoCredentials(f"No credentials configured for {name}", details={"provider": name})
    return {row.field_name: decrypt_secret(row.encrypted_value) for row in rows}


async def credential_status(session: AsyncSession, provider: str) -> Dict[str, Any]:
    name = normalize_provider(provider)
    rows = {row.field_name: row for row in await list_credentials(session, name)}
    fields = []
    for field in adapter_class(name).credential_fields:
        row = rows.get(field.field_name)
        fields.append(
            {
                "field_name": field.field_name,
                "display_name": field.display_name,
                "required": field.required,
                "configured": row is not None,
                "status": row.status if row else None,
                "error_message": row.error_message if row else None,
                "last_validated_at": row.last_validated_at if row else None,
                "updated_at": row.updated_at if row else None,
            }
        )
    complete = all(f["configured"] for f in fields if f["required"])
    return json_safe({"provider": name, "complete": complete, "fields": fields})


async def validate_provider(
    session: AsyncSession,
    provider: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Dict[str, Any]:
    name = normalize_provider(provider)
    creds = await load_provider_credentials(session, name)
    adapter = get_provider_adapter(name, creds, transport=transport)
    result = await adapter.validate_credentials()
    await mark_credentials_validated(session, name, valid=result.valid, message=result.message)
    await session.commit()
    if not result.valid:
        logger.warning("Provider credentials rejected", extra={"provider": name, "message": result.message})
    return json_safe({"provider": name, "valid": result.valid, "message": result.message, "details": result.details})
