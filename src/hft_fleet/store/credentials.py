from __future__ import annotations

import uuid
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation
from hft_fleet.common.models import ProviderCredential
from hft_fleet.store.common import as_utc, dialect_insert, now_utc


async def save_credential(
    session: AsyncSession,
    *,
    provider: str,
    field_name: str,
    encrypted_value: str,
    expected_updated_at: datetime | None = None,
) -> tuple[ProviderCredential, bool]:
    """
    Insert or rotate one credential field.

    The (provider, field_name) pair is unique; a rotation is a
    read-modify-write guarded by ``updated_at`` when the caller supplies the
    value it last saw.
    """
    now = now_utc()
    stmt = (
        dialect_insert(session, ProviderCredential)
        .values(
            id=uuid.uuid4(),
            provider=provider,
            field_name=field_name,
            encrypted_value=encrypted_value,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["provider", "field_name"])
        .returning(ProviderCredential.id)
    )
    inserted_id = (await session.execute(stmt)).scalar()
    if inserted_id is not None:
        return await session.get(ProviderCredential, inserted_id), True

    existing = await session.scalar(
        select(ProviderCredential)
        .where(ProviderCredential.provider == provider, ProviderCredential.field_name == field_name)
        .limit(1)
    )
    if existing is None:
        raise InvariantViolation("Credential insert conflicted but no existing row was found")
    if expected_updated_at is not None and as_utc(existing.updated_at) != as_utc(expected_updated_at):
        raise InvariantViolation(
            "Credential was modified by another writer",
            details={"provider": provider, "field_name": field_name},
        )
    result = await session.execute(
        update(ProviderCredential)
        .where(
            ProviderCredential.id == existing.id,
            ProviderCredential.updated_at == existing.updated_at,
        )
        .values(encrypted_value=encrypted_value, status="pending", error_message=None, updated_at=now)
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            "Credential was modified by another writer",
            details={"provider": provider, "field_name": field_name},
        )
    await session.flush()
    await session.refresh(existing)
    return existing, False


async def list_credentials(session: AsyncSession, provider: str) -> Sequence[ProviderCredential]:
    stmt = (
        select(ProviderCredential)
        .where(ProviderCredential.provider == provider)
        .order_by(ProviderCredential.field_name)
    )
    return (await session.execute(stmt)).scalars().all()


async def mark_credentials_validated(
    session: AsyncSession,
    provider: str,
    *,
    valid: bool,
    message: str | None,
) -> None:
    now = now_utc()
    await session.execute(
        update(ProviderCredential)
        .where(ProviderCredential.provider == provider)
        .values(
            status="valid" if valid else "invalid",
            error_message=None if valid else message,
            last_validated_at=now,
        )
    )
    await session.flush()


async def delete_credentials(session: AsyncSession, provider: str) -> int:
    result = await session.execute(delete(ProviderCredential).where(ProviderCredential.provider == provider))
    await session.flush()
    return result.rowcount or 0
