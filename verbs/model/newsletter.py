from __future__ import annotations
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..helpers import utcnow
from ..infra.sql import GatedAsyncSession
from .db import NewsletterCampaign, NewsletterSubscriber
from .records import CampaignRecord, SubscriberRecord

log = structlog.get_logger().bind(component="newsletter")

_subs = NewsletterSubscriber.__table__
_campaigns = NewsletterCampaign.__table__

# outcomes of subscribe()
CREATED = "created"
RESUBSCRIBED = "resubscribed"
ALREADY = "already"


async def _find_subscriber(
    db: GatedAsyncSession, email: str
) -> Optional[SubscriberRecord]:
    row = (await db.session.execute(
        select(_subs).where(_subs.c.email == email)
    )).mappings().first()
    return SubscriberRecord.from_row(row) if row else None


async def _subscribe(
    db: GatedAsyncSession, email: str, source: Optional[str]
) -> Tuple[str, SubscriberRecord]:
    async with db.gated():
        async with db.session.begin():
            existing = await _find_subscriber(db, email)

            if existing is None:
                sub = NewsletterSubscriber(email=email, source=source)
                db.session.add(sub)
                await db.session.flush()
                return CREATED, SubscriberRecord(
                    id=sub.id,
                    email=sub.email,
                    unsubscribe_token=sub.unsubscribe_token,
                    source=sub.source,
                    subscribed_at=sub.subscribed_at,
                )

            if existing.unsubscribed_at is None:
                return ALREADY, existing

            await db.session.execute(
                update(_subs)
                .where(_subs.c.id == existing.id)
                .values(unsubscribed_at=None, subscribed_at=utcnow())
            )
    return RESUBSCRIBED, existing


async def subscribe(
    db: GatedAsyncSession, email: str, source: Optional[str]
) -> Tuple[str, SubscriberRecord]:
    email = email.strip().lower()
    try:
        return await _subscribe(db, email, source)
    except IntegrityError:
        # a concurrent signup inserted the same email between our read and
        # our insert; the second pass sees its row
        log.info("newsletter.subscribe_conflict", email=email)
        return await _subscribe(db, email, source)


async def unsubscribe(db: GatedAsyncSession, token: str) -> bool:
    """Soft-delete: the row stays, stamped with unsubscribed_at."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(_subs.c.id, _subs.c.unsubscribed_at)
                .where(_subs.c.unsubscribe_token == token)
            )).first()
            if row is None:
                return False
            if row.unsubscribed_at is None:
                await db.session.execute(
                    update(_subs)
                    .where(_subs.c.id == row.id)
                    .values(unsubscribed_at=utcnow())
                )
    return True


async def active_subscribers(db: GatedAsyncSession) -> List[SubscriberRecord]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(_subs)
                .where(_subs.c.unsubscribed_at.is_(None))
                .order_by(_subs.c.subscribed_at)
            )).mappings().all()
    return [SubscriberRecord.from_row(r) for r in rows]


# ----------------------------
# Campaigns
# ----------------------------
async def create_campaign(
    db: GatedAsyncSession, subject: str, html_content: str
) -> CampaignRecord:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                _campaigns.insert()
                .values(subject=subject, html_content=html_content)
                .returning(*_campaigns.c)
            )).mappings().first()
    return CampaignRecord.from_row(row)


async def list_campaigns(db: GatedAsyncSession) -> List[CampaignRecord]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(_campaigns)
                .order_by(_campaigns.c.created_at.desc())
            )).mappings().all()
    return [CampaignRecord.from_row(r) for r in rows]


async def get_campaign(
    db: GatedAsyncSession, campaign_id: str
) -> Optional[CampaignRecord]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(_campaigns).where(_campaigns.c.id == campaign_id)
            )).mappings().first()
    return CampaignRecord.from_row(row) if row else None


async def claim_campaign(
    db: GatedAsyncSession, campaign_id: str
) -> Optional[CampaignRecord]:
    """
    Move a draft to 'sending'. Only one caller wins; everyone else gets None,
    so a double click never mails the list twice.
    """
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(_campaigns)
                .where(_campaigns.c.id == campaign_id,
                       _campaigns.c.status == "draft")
                .values(status="sending")
                .returning(*_campaigns.c)
            )).mappings().first()
    return CampaignRecord.from_row(row) if row else None


async def finish_campaign(
    db: GatedAsyncSession, campaign_id: str, *, sent: int, failed: int
) -> CampaignRecord:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(_campaigns)
                .where(_campaigns.c.id == campaign_id)
                .values(status="sent", sent_count=sent, failed_count=failed,
                        sent_at=utcnow())
                .returning(*_campaigns.c)
            )).mappings().first()
    return CampaignRecord.from_row(row)
