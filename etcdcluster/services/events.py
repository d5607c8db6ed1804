from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.logger import get_logger
from etcdcluster.models.event import Event

_logger = get_logger("services.events")


async def list_events(
    session: AsyncSession,
    limit: int = 200,
    category: Optional[str] = None,
) -> List[Event]:
    query = select(Event).order_by(Event.created_at.desc())
    if category:
        query = query.where(Event.category == category)
    query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def record_event(
    session: AsyncSession,
    event_id: str,
    category: str,
    name: str,
    level: str,
    fields: Optional[Dict[str, Any]] = None,
) -> Event:
    event = Event(
        id=event_id,
        category=category,
        name=name,
        level=level,
        fields=fields or {},
    )
    session.add(event)
    _logger.debug(
        "events.record",
        "Recorded event",
        event_id=event.id,
        category=category,
        name=name,
        level=level,
    )
    return event
