# model/manage.py
"""
Admin-side writes: events, tiers and the DJ lineup.
Orders are never written here; they belong to the webhook reconciler.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..infra.sql import GatedAsyncSession
from .db import DJ, Event, EventDJ, TicketTier
from .records import EventRecord, TierRecord

_events = Event.__table__
_tiers = TicketTier.__table__
_event_djs = EventDJ.__table__

EVENT_STATUSES = ("draft", "published", "archived")


class DuplicateLineupEntry(Exception):
    pass


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # stored without offset on SQLite, so normalize before writing
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc)


async def create_event(
    db: GatedAsyncSession,
    *,
    title: str,
    date: datetime,
    venue_name: str,
    venue_city: str,
    timezone: str = "America/New_York",
    description: Optional[str] = None,
    time_end: Optional[datetime] = None,
    venue_link: Optional[str] = None,
    image_url: Optional[str] = None,
    flyer_url: Optional[str] = None,
    door_only_mode: bool = False,
) -> EventRecord:
    ev = Event(
        title=title, date=_as_utc(date), venue_name=venue_name,
        venue_city=venue_city, timezone=timezone, description=description,
        time_end=_as_utc(time_end),
        venue_link=venue_link, image_url=image_url, flyer_url=flyer_url,
        door_only_mode=door_only_mode, status="draft",
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(ev)
            await db.session.flush()
            row = (await db.session.execute(
                select(_events).where(_events.c.id == ev.id)
            )).mappings().one()
    return EventRecord.from_row(row)


async def set_event_status(
    db: GatedAsyncSession, event_id: str, status: str
) -> bool:
    if status not in EVENT_STATUSES:
        raise ValueError(f"status must be one of {EVENT_STATUSES}")
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(_events)
                .where(_events.c.id == event_id)
                .values(status=status)
                .returning(_events.c.id)
            )).first()
    return row is not None


async def create_tier(
    db: GatedAsyncSession,
    *,
    event_id: str,
    name: str,
    price: int,
    tier_type: str = "online",
    max_stock: Optional[int] = None,
    sort_order: Optional[int] = None,
) -> TierRecord:
    async with db.gated():
        async with db.session.begin():
            if sort_order is None:
                sort_order = (await db.session.execute(
                    select(func.count()).select_from(_tiers)
                    .where(_tiers.c.event_id == event_id)
                )).scalar_one()
            tier = TicketTier(
                event_id=event_id, name=name, price=price,
                tier_type=tier_type, max_stock=max_stock,
                sort_order=sort_order, sold_count=0, is_active=True,
            )
            db.session.add(tier)
            await db.session.flush()
            row = (await db.session.execute(
                select(_tiers).where(_tiers.c.id == tier.id)
            )).mappings().one()
    return TierRecord.from_row(row)


async def update_tier(
    db: GatedAsyncSession, tier_id: str, **values: Any
) -> Optional[TierRecord]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(_tiers)
                .where(_tiers.c.id == tier_id)
                .values(**values)
                .returning(*_tiers.c)
            )).mappings().first()
    return TierRecord.from_row(row) if row else None


async def add_event_dj(
    db: GatedAsyncSession,
    *,
    event_id: str,
    dj_id: Optional[str],
    new_dj_name: Optional[str],
    slot_start: Optional[str] = None,
    slot_end: Optional[str] = None,
) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """
    Append a DJ to an event's lineup, creating the DJ first when only a name
    is given. Returns (lineup entry with nested dj, newly created dj or None).
    Raises DuplicateLineupEntry if the DJ is already on the bill.
    """
    new_dj = None
    try:
        async with db.gated():
            async with db.session.begin():
                if new_dj_name:
                    created = DJ(name=new_dj_name)
                    db.session.add(created)
                    await db.session.flush()
                    dj_id = created.id
                    new_dj = {
                        "id": created.id,
                        "name": created.name,
                        "instagram_url": None,
                        "soundcloud_url": None,
                    }

                position = (await db.session.execute(
                    select(func.count()).select_from(_event_djs)
                    .where(_event_djs.c.event_id == event_id)
                )).scalar_one()

                entry = EventDJ(
                    event_id=event_id, dj_id=dj_id,
                    slot_start=slot_start or None, slot_end=slot_end or None,
                    sort_order=position,
                )
                db.session.add(entry)
                await db.session.flush()
                dj = await db.session.get(DJ, dj_id)
    except IntegrityError as e:
        if "event_djs_unique" in str(e.orig) or "UNIQUE" in str(e.orig):
            raise DuplicateLineupEntry(event_id) from e
        raise

    return {
        "id": entry.id,
        "event_id": entry.event_id,
        "dj_id": entry.dj_id,
        "slot_start": entry.slot_start,
        "slot_end": entry.slot_end,
        "sort_order": entry.sort_order,
        "dj": None if dj is None else {
            "id": dj.id,
            "name": dj.name,
            "instagram_url": dj.instagram_url,
            "soundcloud_url": dj.soundcloud_url,
        },
    }, new_dj
