from __future__ import annotations

import uuid
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import TimelineEvent
from hft_fleet.store.common import now_utc
from hft_fleet.utils.json_safe import json_safe


async def append_timeline_event(
    session: AsyncSession,
    *,
    provider: str,
    event_type: str,
    title: str,
    event_subtype: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> TimelineEvent:
    event = TimelineEvent(
        id=uuid.uuid4(),
        provider=provider,
        event_type=event_type,
        event_subtype=event_subtype,
        title=title,
        description=description,
        metadata_=json_safe(metadata or {}),
        created_at=now_utc(),
    )
    session.add(event)
    await session.flush()
    return event


async def list_timeline_events(
    session: AsyncSession,
    *,
    provider: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> Sequence[TimelineEvent]:
    stmt = select(TimelineEvent).order_by(TimelineEvent.created_at.desc()).limit(limit)
    if provider:
        stmt = stmt.where(TimelineEvent.provider == provider)
    if event_type:
        stmt = stmt.where(TimelineEvent.event_type == event_type)
    return (await session.execute(stmt)).scalars().all()
