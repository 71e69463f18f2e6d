from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..infra.sql import GatedAsyncSession
from .db import Event, TicketTier, EventDJ, DJ, Mix
from .records import EventRecord, TierRecord

_events = Event.__table__
_tiers = TicketTier.__table__
_event_djs = EventDJ.__table__
_djs = DJ.__table__
_mixes = Mix.__table__


async def get_event(
    db: GatedAsyncSession, event_id: str
) -> Optional[EventRecord]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(_events).where(_events.c.id == event_id)
            )).mappings().first()
    return EventRecord.from_row(row) if row else None


async def get_tier(
    db: GatedAsyncSession, tier_id: str, event_id: Optional[str] = None
) -> Optional[TierRecord]:
    stmt = select(_tiers).where(_tiers.c.id == tier_id)
    if event_id is not None:
        stmt = stmt.where(_tiers.c.event_id == event_id)
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(stmt)).mappings().first()
    return TierRecord.from_row(row) if row else None


async def _tiers_for(
    db: GatedAsyncSession, event_ids: List[str], active_only: bool
) -> Dict[str, List[TierRecord]]:
    # UN-GATED: callers hold the gate and the transaction
    out: Dict[str, List[TierRecord]] = {eid: [] for eid in event_ids}
    if not event_ids:
        return out
    stmt = (
        select(_tiers)
        .where(_tiers.c.event_id.in_(event_ids))
        .order_by(_tiers.c.sort_order)
    )
    if active_only:
        stmt = stmt.where(_tiers.c.is_active.is_(True))
    for row in (await db.session.execute(stmt)).mappings():
        out[row["event_id"]].append(TierRecord.from_row(row))
    return out


async def list_events(
    db: GatedAsyncSession, statuses: tuple = ("published",)
) -> List[Dict[str, Any]]:
    """Events with the given statuses, soonest first, with all their tiers."""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(_events)
                .where(_events.c.status.in_(statuses))
                .order_by(_events.c.date.asc())
            )).mappings().all()
            events = [EventRecord.from_row(r) for r in rows]
            tiers = await _tiers_for(
                db, [e.id for e in events], active_only=False
            )
    return [
        {**e.to_json(), "ticket_tiers": [t.to_json() for t in tiers[e.id]]}
        for e in events
    ]


async def get_event_with_details(
    db: GatedAsyncSession, event_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(_events).where(_events.c.id == event_id)
            )).mappings().first()
            if not row:
                return None
            event = EventRecord.from_row(row)
            tiers = await _tiers_for(db, [event.id], active_only=True)
            lineup = (await db.session.execute(
                select(
                    _djs,
                    _event_djs.c.slot_start,
                    _event_djs.c.slot_end,
                )
                .join(_event_djs, _event_djs.c.dj_id == _djs.c.id)
                .where(_event_djs.c.event_id == event_id)
                .order_by(_event_djs.c.sort_order)
            )).mappings().all()

    return {
        "event": event.to_json(),
        "tiers": [t.to_json() for t in tiers[event.id]],
        "djs": [
            {
                "id": r["id"],
                "name": r["name"],
                "instagram_url": r["instagram_url"],
                "soundcloud_url": r["soundcloud_url"],
                "slot_start": r["slot_start"],
                "slot_end": r["slot_end"],
            }
            for r in lineup
        ],
    }


async def list_published_mixes(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(_mixes)
                .where(_mixes.c.status == "published")
                .order_by(_mixes.c.created_at.desc())
            )).mappings().all()
    return [
        {
            "id": r["id"],
            "title": r["title"],
            "description": r["description"],
            "audio_url": r["audio_url"],
            "cover_image_url": r["cover_image_url"],
            "duration_seconds": r["duration_seconds"],
        }
        for r in rows
    ]
