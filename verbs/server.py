from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, File, Form, Request
from fastapi import UploadFile
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse
)
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import checkout, webhook
from .errors import NotConfigured, NotFound, Unauthorized, ValidationFailed
from .errors import VerbsError
from .helpers import ct_equal, is_valid_email
from .infra.log import configure_logging
from .infra.sql import Database, GatedAsyncSession
from .model import catalog, manage, newsletter, orders
from .model.db import Base
from .model.ratelimit import RateLimiter, new_limiter
from .notifications import Notifier, check_verification_code, run_effects
from .payments import PaymentAdapter, StripePayments
from .settings import Settings
from .storage import (
    BlobStore, blob_pathname, content_type_for, validate_upload
)

log = structlog.get_logger().bind(component="server")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


# ----------------------------
# Request bodies (admin)
# ----------------------------
class EventIn(BaseModel):
    title: str
    date: datetime
    venue_name: str
    venue_city: str
    timezone: str = "America/New_York"
    description: Optional[str] = None
    time_end: Optional[datetime] = None
    venue_link: Optional[str] = None
    image_url: Optional[str] = None
    flyer_url: Optional[str] = None
    door_only_mode: bool = False


class CampaignIn(BaseModel):
    subject: str
    html_content: str


class TierIn(BaseModel):
    event_id: str
    name: str
    price: int  # cents
    tier_type: str = "online"
    max_stock: Optional[int] = None
    sort_order: Optional[int] = None


def create_app(
    settings: Optional[Settings] = None,
    *,
    payments: Optional[PaymentAdapter] = None,
    notifier: Optional[Notifier] = None,
    limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)

    database = Database.from_env(settings.database_url)

    if payments is None and settings.stripe_secret_key:
        payments = StripePayments(settings.stripe_secret_key)

    app = FastAPI(
        title="VERBS",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.state.payments = payments
    app.state.notifier = notifier
    app.state.limiter = limiter

    # ----------------------------
    # Dependencies
    # ----------------------------
    async def get_db() -> AsyncIterator[GatedAsyncSession]:
        async with database.session() as db:
            yield db

    def get_payments(request: Request) -> Optional[PaymentAdapter]:
        return request.app.state.payments

    def get_notifier(request: Request) -> Optional[Notifier]:
        return request.app.state.notifier

    def get_limiter(request: Request) -> RateLimiter:
        return request.app.state.limiter

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        await database.create_all(Base.metadata)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=16
            ),
        )
        if app.state.notifier is None:
            app.state.notifier = Notifier(
                http=app.state.http,
                api_key=settings.resend_api_key,
                sender=settings.email_from,
                verification_secret=settings.verification_secret,
                audience_id=settings.resend_audience_id,
                campaign_sender=settings.newsletter_from,
            )
        app.state.blobs = BlobStore(
            http=app.state.http,
            token=settings.blob_token,
            api_url=settings.blob_api_url,
        )

    @app.on_event("startup")
    async def _limiter_start():
        app.state.redis = None
        if app.state.limiter is not None:
            return
        r = None
        if settings.ratelimit_backend == "redis":
            r = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            app.state.redis = r
        app.state.limiter = new_limiter(
            settings.ratelimit_backend,
            limit=settings.ratelimit_max,
            window_seconds=settings.ratelimit_window_seconds,
            r=r,
        )

    @app.on_event("startup")
    async def _say_hello():
        log.info(
            "startup",
            stripe=payments is not None,
            email=bool(settings.resend_api_key),
            blob=bool(settings.blob_token),
            ratelimit=settings.ratelimit_backend,
        )

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await database.dispose()

    @app.exception_handler(VerbsError)
    async def _verbs_error(request: Request, exc: VerbsError):
        return ORJSONResponse({"error": exc.message},
                              status_code=exc.status_code)

    # ----------------------------
    # Helpers
    # ----------------------------
    def is_admin(request: Request) -> bool:
        return bool(request.session.get("admin_user"))

    def require_admin_api(request: Request) -> None:
        if not is_admin(request):
            raise Unauthorized()

    # ----------------------------
    # Checkout
    # ----------------------------
    @app.post("/checkout")
    async def create_checkout(
        payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        url = await checkout.start_checkout(
            db, pay, settings.base_url, payload
        )
        return {"url": url}

    @app.post("/door-checkout")
    async def create_door_checkout(
        payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        url = await checkout.start_door_checkout(
            db, pay, settings.base_url, payload
        )
        return {"url": url}

    # ----------------------------
    # Webhook endpoint (Stripe)
    # ----------------------------
    @app.post("/stripe-webhook")
    async def stripe_webhook(
        request: Request,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
        notif: Optional[Notifier] = Depends(get_notifier),
    ):
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        try:
            event = webhook.verify_event(
                pay, settings.stripe_webhook_secret, payload, signature
            )
            await webhook.reconcile(db, notif, event)
        except VerbsError as e:
            return PlainTextResponse(e.message, status_code=e.status_code)
        except Exception:
            log.exception("webhook.error")
            return PlainTextResponse("Webhook error", status_code=500)
        return PlainTextResponse("OK")

    # ----------------------------
    # Newsletter
    # ----------------------------
    @app.post("/newsletter/subscribe")
    async def newsletter_subscribe(
        request: Request,
        payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        limiter: RateLimiter = Depends(get_limiter),
        notif: Optional[Notifier] = Depends(get_notifier),
    ):
        ip = (
            (request.client.host if request.client else None)
            or request.headers.get("x-forwarded-for")
            or "unknown"
        )
        if not await limiter.hit(ip):
            return ORJSONResponse(
                {"error": "Too many requests. Please try again later."},
                status_code=429,
            )

        email = payload.get("email")
        source = payload.get("source") or "website"
        if not isinstance(email, str) or not is_valid_email(email):
            raise ValidationFailed("Please enter a valid email address")

        try:
            outcome, sub = await newsletter.subscribe(db, email, source)
        except Exception:
            log.exception("newsletter.subscribe_failed")
            return ORJSONResponse(
                {"error": "Failed to subscribe. Please try again."},
                status_code=500,
            )

        if outcome == newsletter.ALREADY:
            return {"message": "You're already subscribed!"}
        if notif is not None:
            await run_effects([
                ("audience_sync", lambda: notif.sync_audience(sub.email)),
            ])
        if outcome == newsletter.RESUBSCRIBED:
            return {"message": "Welcome back! You've been resubscribed."}
        return {"message": "Successfully subscribed!"}

    @app.post("/newsletter/unsubscribe")
    async def newsletter_unsubscribe(
        payload: dict,
        db: GatedAsyncSession = Depends(get_db),
    ):
        token = payload.get("token")
        if not token or not isinstance(token, str):
            raise ValidationFailed("Missing token")
        if not await newsletter.unsubscribe(db, token):
            raise NotFound("Subscription not found")
        return {"message": "You've been unsubscribed."}

    # ----------------------------
    # Public catalog
    # ----------------------------
    @app.get("/api/events")
    async def api_events(db: GatedAsyncSession = Depends(get_db)):
        return {"items": await catalog.list_events(db)}

    @app.get("/api/events/{event_id}")
    async def api_event(event_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
        details = await catalog.get_event_with_details(db, event_id)
        if details is None or details["event"]["status"] == "draft":
            raise NotFound("Event not found")
        return details

    @app.get("/api/mixes")
    async def api_mixes(db: GatedAsyncSession = Depends(get_db)):
        return {"items": await catalog.list_published_mixes(db)}

    # ----------------------------
    # API: Order status (polled by success page)
    # ----------------------------
    @app.get("/api/orders/session/{session_id}")
    async def api_order_by_session(session_id: str,
                                   db: GatedAsyncSession = Depends(get_db)):
        order = await orders.find_by_session(db, session_id)
        if order is None:
            # webhook still in flight -> let the client keep polling
            raise NotFound("Order not found")
        return {
            "order_number": order.order_number,
            "status": order.status,
            "quantity": order.quantity,
            "amount_paid": order.amount_paid,
            "event_id": order.event_id,
        }

    @app.get("/success", response_class=HTMLResponse)
    async def success_page(request: Request, session_id: str = ""):
        return templates.TemplateResponse(
            request, "success.html", {"session_id": session_id}
        )

    # ----------------------------
    # Uploads (admin)
    # ----------------------------
    @app.post("/upload")
    async def upload(
        request: Request,
        file: Optional[UploadFile] = File(None),
        kind: str = Form("", alias="type"),
    ):
        require_admin_api(request)
        if file is None:
            raise ValidationFailed("No file provided")
        data = await file.read()
        filename = file.filename or "upload"
        ctype = file.content_type or content_type_for(filename)
        validate_upload(kind, ctype, len(data))
        pathname = blob_pathname(kind, filename)
        url = await request.app.state.blobs.put(pathname, data, ctype)
        log.info("upload.stored", pathname=pathname, size=len(data))
        return {"url": url}

    # ----------------------------
    # Admin: login / logout
    # ----------------------------
    @app.get("/admin/login", response_class=HTMLResponse)
    async def admin_login_get(request: Request, next: str = "/admin"):
        return templates.TemplateResponse(
            request, "login.html", {"next": next, "error": None}
        )

    @app.post("/admin/login", response_class=HTMLResponse)
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        next: str = Form("/admin"),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            # only ever bounce back inside the site
            dest = next if next.startswith("/") and not next.startswith("//") \
                else "/admin"
            return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
        return templates.TemplateResponse(
            request, "login.html",
            {"next": next, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.post("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/admin/login",
                                status_code=HTTP_303_SEE_OTHER)

    @app.get("/admin", response_class=HTMLResponse)
    async def admin_page(request: Request,
                         db: GatedAsyncSession = Depends(get_db)):
        if not is_admin(request):
            return RedirectResponse(url="/admin/login?next=/admin",
                                    status_code=307)
        recent = await orders.recent_orders(db, limit=50)
        events = await catalog.list_events(
            db, statuses=manage.EVENT_STATUSES
        )
        return templates.TemplateResponse(
            request, "admin.html", {"orders": recent, "events": events}
        )

    # ----------------------------
    # Admin: events, tiers, lineup
    # ----------------------------
    @app.post("/admin/events")
    async def admin_create_event(
        request: Request, body: EventIn,
        db: GatedAsyncSession = Depends(get_db),
    ):
        require_admin_api(request)
        ev = await manage.create_event(db, **body.model_dump())
        return ev.to_json()

    @app.post("/admin/events/{event_id}/status")
    async def admin_event_status(
        request: Request, event_id: str, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        require_admin_api(request)
        status = payload.get("status")
        if status not in manage.EVENT_STATUSES:
            raise ValidationFailed("Invalid status")
        if not await manage.set_event_status(db, event_id, status):
            raise NotFound("Event not found")
        out = {"success": True, "status": status}
        if status == "archived" and pay is not None:
            # the status change stands even when Stripe is unreachable
            try:
                out["archived_products"] = (
                    await pay.archive_products_for_event(event_id)
                )
            except Exception:
                log.exception("admin.stripe_archive_failed",
                              event_id=event_id)
                out["warning"] = "Stripe products were not archived"
        return out

    @app.post("/admin/event-djs")
    async def admin_event_djs(
        request: Request, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
    ):
        require_admin_api(request)
        event_id = payload.get("event_id")
        dj_id = payload.get("dj_id")
        new_dj_name = payload.get("new_dj_name")
        if not event_id:
            raise ValidationFailed("Missing event_id")
        if not dj_id and not new_dj_name:
            raise ValidationFailed("Must provide either dj_id or new_dj_name")
        try:
            entry, new_dj = await manage.add_event_dj(
                db,
                event_id=event_id,
                dj_id=dj_id,
                new_dj_name=new_dj_name,
                slot_start=payload.get("slot_start"),
                slot_end=payload.get("slot_end"),
            )
        except manage.DuplicateLineupEntry:
            raise ValidationFailed("DJ is already in the lineup")
        return {"success": True, "eventDj": entry, "newDj": new_dj}

    @app.post("/admin/tiers")
    async def admin_create_tier(
        request: Request, body: TierIn,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        require_admin_api(request)
        if body.tier_type not in ("online", "door"):
            raise ValidationFailed("Invalid tier type")
        if body.price < 0:
            raise ValidationFailed("Price must not be negative")
        event = await catalog.get_event(db, body.event_id)
        if event is None:
            raise NotFound("Event not found")

        tier = await manage.create_tier(db, **body.model_dump())
        if pay is None:
            return {"tier": tier.to_json(),
                    "warning": "Payments not configured"}
        try:
            ids = await pay.create_product_and_price(
                event_id=event.id, tier_id=tier.id,
                event_title=event.title, tier_name=tier.name,
                price=tier.price,
            )
        except Exception:
            log.exception("admin.stripe_product_failed", tier_id=tier.id)
            return {"tier": tier.to_json(),
                    "warning": "Tier saved without a Stripe price"}
        tier = await manage.update_tier(
            db, tier.id,
            stripe_product_id=ids["product_id"],
            stripe_price_id=ids["price_id"],
        )
        return {"tier": tier.to_json()}

    @app.post("/admin/tiers/{tier_id}/price")
    async def admin_tier_price(
        request: Request, tier_id: str, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        require_admin_api(request)
        price = payload.get("price")
        if not isinstance(price, int) or isinstance(price, bool) or price < 0:
            raise ValidationFailed("Price must be a non-negative integer")
        tier = await catalog.get_tier(db, tier_id)
        if tier is None:
            raise NotFound("Ticket tier not found")

        values = {"price": price}
        if tier.stripe_product_id:
            if pay is None:
                raise NotConfigured("Payments not configured")
            values["stripe_price_id"] = await pay.replace_price(
                product_id=tier.stripe_product_id,
                old_price_id=tier.stripe_price_id,
                new_price=price,
                event_id=tier.event_id,
                tier_id=tier.id,
            )
        tier = await manage.update_tier(db, tier_id, **values)
        return {"tier": tier.to_json()}

    @app.post("/admin/tiers/{tier_id}/name")
    async def admin_tier_name(
        request: Request, tier_id: str, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        require_admin_api(request)
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationFailed("Name is required")
        tier = await manage.update_tier(db, tier_id, name=name.strip())
        if tier is None:
            raise NotFound("Ticket tier not found")
        if tier.stripe_product_id and pay is not None:
            event = await catalog.get_event(db, tier.event_id)
            try:
                await pay.update_product_name(
                    product_id=tier.stripe_product_id,
                    event_title=event.title,
                    tier_name=tier.name,
                )
            except Exception:
                log.exception("admin.stripe_rename_failed", tier_id=tier_id)
                return {"tier": tier.to_json(),
                        "warning": "Stripe product name not updated"}
        return {"tier": tier.to_json()}

    @app.post("/admin/tiers/{tier_id}/active")
    async def admin_tier_active(
        request: Request, tier_id: str, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
    ):
        require_admin_api(request)
        active = payload.get("is_active")
        if not isinstance(active, bool):
            raise ValidationFailed("is_active must be true or false")
        tier = await manage.update_tier(db, tier_id, is_active=active)
        if tier is None:
            raise NotFound("Ticket tier not found")
        return {"tier": tier.to_json()}

    # ----------------------------
    # Admin: orders
    # ----------------------------
    @app.get("/admin/orders")
    async def admin_orders(request: Request, limit: int = 200,
                           db: GatedAsyncSession = Depends(get_db)):
        require_admin_api(request)
        items = await orders.recent_orders(db, limit=limit)
        return {"items": [o.to_json() for o in items], "limit": limit}

    @app.post("/admin/orders/{order_number}/refund")
    async def admin_refund(
        request: Request, order_number: int, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        pay: Optional[PaymentAdapter] = Depends(get_payments),
    ):
        require_admin_api(request)
        if pay is None:
            raise NotConfigured("Payments not configured")
        order = await orders.get_order(db, order_number)
        if order is None:
            raise NotFound("Order not found")
        if not order.stripe_payment_intent_id:
            raise ValidationFailed("Order has no payment to refund")
        amount = payload.get("amount")
        if amount is not None and (
            not isinstance(amount, int) or isinstance(amount, bool)
            or amount <= 0 or amount > order.amount_paid - order.refunded_amount
        ):
            raise ValidationFailed("Invalid refund amount")
        # state changes arrive through the charge.refunded webhook
        refund_id = await pay.create_refund(
            payment_intent_id=order.stripe_payment_intent_id, amount=amount
        )
        log.info("admin.refund_requested", order_number=order_number,
                 amount=amount, refund_id=refund_id)
        return {"refund_id": refund_id}

    # ----------------------------
    # Admin: door
    # ----------------------------
    @app.post("/admin/door/verify")
    async def admin_door_verify(
        request: Request, payload: dict,
        db: GatedAsyncSession = Depends(get_db),
    ):
        require_admin_api(request)
        code = payload.get("code")
        if not isinstance(code, str):
            raise ValidationFailed("Missing code")
        order_number = check_verification_code(
            code, settings.verification_secret
        )
        if order_number is None:
            raise ValidationFailed("Invalid verification code")
        order = await orders.get_order(db, order_number)
        if order is None:
            raise NotFound("Order not found")
        return {
            "valid": order.status != "refunded",
            "order": order.to_json(),
        }

    # ----------------------------
    # Admin: newsletter campaigns
    # ----------------------------
    @app.get("/admin/newsletter/campaigns")
    async def admin_campaigns(request: Request,
                              db: GatedAsyncSession = Depends(get_db)):
        require_admin_api(request)
        items = await newsletter.list_campaigns(db)
        return {"items": [c.to_json() for c in items]}

    @app.post("/admin/newsletter/campaigns")
    async def admin_create_campaign(
        request: Request, body: CampaignIn,
        db: GatedAsyncSession = Depends(get_db),
    ):
        require_admin_api(request)
        if not body.subject.strip() or not body.html_content.strip():
            raise ValidationFailed("Subject and content are required")
        campaign = await newsletter.create_campaign(
            db, body.subject.strip(), body.html_content
        )
        return {"campaign": campaign.to_json()}

    @app.post("/admin/newsletter/campaigns/{campaign_id}/send")
    async def admin_send_campaign(
        request: Request, campaign_id: str,
        db: GatedAsyncSession = Depends(get_db),
        notif: Optional[Notifier] = Depends(get_notifier),
    ):
        require_admin_api(request)
        if notif is None:
            raise NotConfigured("Email not configured")
        campaign = await newsletter.claim_campaign(db, campaign_id)
        if campaign is None:
            if await newsletter.get_campaign(db, campaign_id) is None:
                raise NotFound("Campaign not found")
            raise ValidationFailed("Campaign has already been sent")

        sent = failed = 0
        for sub in await newsletter.active_subscribers(db):
            try:
                email_id = await notif.send_campaign(
                    to=sub.email,
                    subject=campaign.subject,
                    html_content=campaign.html_content,
                    unsubscribe_url=(f"{settings.base_url}/unsubscribe"
                                     f"?token={sub.unsubscribe_token}"),
                )
            except Exception:
                log.exception("newsletter.campaign_send_failed",
                              campaign_id=campaign_id, to=sub.email)
                email_id = None
            if email_id is None:
                failed += 1
            else:
                sent += 1

        campaign = await newsletter.finish_campaign(
            db, campaign_id, sent=sent, failed=failed
        )
        log.info("newsletter.campaign_sent", campaign_id=campaign_id,
                 sent=sent, failed=failed)
        return {"campaign": campaign.to_json()}

    return app
