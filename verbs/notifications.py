"""
Transactional email through Resend, plus the runner for post-commit side
effects.

Nothing in here may undo or block the write that triggered it: the
reconciler commits first, then hands its follow-ups to run_effects().
"""
from __future__ import annotations
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import structlog
from jinja2 import Environment, DictLoader, select_autoescape

from .helpers import cents_to_str

log = structlog.get_logger().bind(component="notifications")

RESEND_API_URL = "https://api.resend.com"

TEMPLATES = {
    "base.html": """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body { font-family: system-ui, sans-serif; line-height: 1.6; color: #000; max-width: 600px; margin: 0 auto; padding: 20px; }
    h1 { font-size: 32px; font-weight: 400; margin-bottom: 24px; }
    .details { background: #f5f5f5; padding: 20px; margin: 24px 0; }
    .row { display: flex; justify-content: space-between; padding: 8px 0; border-bottom: 1px solid #e0e0e0; }
    .row:last-child { border-bottom: none; }
    .label { color: #666; }
    .code { font-family: monospace; font-size: 20px; letter-spacing: 2px; }
    .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #e0e0e0; font-size: 14px; color: #666; }
  </style>
</head>
<body>
{% block body %}{% endblock %}
  <div class="footer"><p>VERBS</p></div>
</body>
</html>
""",
    "ticket_confirmation.html": """{% extends "base.html" %}
{% block body %}
  <h1>You're in!</h1>
  <p>Hey{% if customer_name %} {{ customer_name }}{% endif %},</p>
  <p>Your tickets for <strong>{{ event_title }}</strong> are confirmed.</p>
  <div class="details">
    <div class="row"><span class="label">Event</span><span>{{ event_title }}</span></div>
    <div class="row"><span class="label">Date</span><span>{{ date_str }}</span></div>
    <div class="row"><span class="label">Time</span><span>{{ time_str }}</span></div>
    <div class="row"><span class="label">Venue</span><span>{{ venue_name }}, {{ venue_city }}</span></div>
    <div class="row"><span class="label">Ticket</span><span>{{ tier_name }} x {{ quantity }}</span></div>
    <div class="row"><span class="label">Total</span><span>${{ amount_str }}</span></div>
  </div>
  {% if verification_code %}
  <p>Show this code at the door:</p>
  <p class="code">{{ verification_code }}</p>
  {% endif %}
  <p>See you there!</p>
{% endblock %}
""",
    "campaign.html": """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body { font-family: system-ui, sans-serif; line-height: 1.6; color: #000; max-width: 600px; margin: 0 auto; padding: 20px; }
    .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #e0e0e0; font-size: 12px; color: #666; }
    .footer a { color: #666; }
  </style>
</head>
<body>
{{ content | safe }}
  <div class="footer">
    <p>VERBS</p>
    <p><a href="{{ unsubscribe_url }}">Unsubscribe</a></p>
  </div>
</body>
</html>
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html", "xml"]),
)


@dataclass(frozen=True)
class TicketConfirmation:
    to: str
    customer_name: Optional[str]
    event_title: str
    event_date: datetime
    event_timezone: str
    venue_name: str
    venue_city: str
    tier_name: str
    quantity: int
    amount_paid: int  # cents
    order_number: Optional[int] = None


def verification_code(order_number: int, secret: str) -> str:
    mac = hmac.new(secret.encode(), str(order_number).encode(),
                   hashlib.sha256).hexdigest()
    return f"VRB-{order_number}-{mac[:8].upper()}"


def check_verification_code(code: str, secret: str) -> Optional[int]:
    """Order number the code belongs to, or None if it was not issued by us."""
    try:
        prefix, number, _ = code.strip().upper().split("-")
        n = int(number)
    except ValueError:
        return None
    if prefix != "VRB":
        return None
    if not hmac.compare_digest(verification_code(n, secret), code.strip().upper()):
        return None
    return n


def _localize(dt: datetime, tz_name: str) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        return dt


def render_ticket_confirmation(
    details: TicketConfirmation, verification_secret: str
) -> Tuple[str, str]:
    """Returns (subject, html)."""
    local = _localize(details.event_date, details.event_timezone)
    code = None
    if details.order_number is not None:
        code = verification_code(details.order_number, verification_secret)
    html = env.get_template("ticket_confirmation.html").render(
        customer_name=details.customer_name,
        event_title=details.event_title,
        date_str=f"{local:%A, %B} {local.day}, {local.year}",
        time_str=local.strftime("%I:%M %p").lstrip("0"),
        venue_name=details.venue_name,
        venue_city=details.venue_city,
        tier_name=details.tier_name,
        quantity=details.quantity,
        amount_str=cents_to_str(details.amount_paid),
        verification_code=code,
    )
    return f"Your tickets for {details.event_title}", html


def render_campaign(html_content: str, unsubscribe_url: str) -> str:
    # html_content is admin-authored and sent as is
    return env.get_template("campaign.html").render(
        content=html_content, unsubscribe_url=unsubscribe_url,
    )


class Notifier:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: Optional[str],
        sender: str,
        verification_secret: str,
        audience_id: Optional[str] = None,
        api_url: str = RESEND_API_URL,
        campaign_sender: Optional[str] = None,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender
        self.verification_secret = verification_secret
        self.audience_id = audience_id
        self.api_url = api_url.rstrip("/")
        self.campaign_sender = campaign_sender or sender

    @property
    def _headers(self) -> Dict[str, str]:
        return {"authorization": f"Bearer {self.api_key}"}

    async def send_ticket_confirmation(
        self, details: TicketConfirmation
    ) -> Optional[str]:
        if not self.api_key:
            log.warning("email.skipped", reason="resend not configured",
                        to=details.to)
            return None
        subject, html = render_ticket_confirmation(
            details, self.verification_secret
        )
        r = await self.http.post(
            f"{self.api_url}/emails",
            headers=self._headers,
            json={
                "from": self.sender,
                "to": [details.to],
                "subject": subject,
                "html": html,
            },
        )
        r.raise_for_status()
        email_id = r.json().get("id")
        log.info("email.sent", to=details.to, email_id=email_id,
                 order_number=details.order_number)
        return email_id

    async def sync_audience(self, email: str) -> None:
        """Mirror a newsletter signup into the Resend audience."""
        if not self.api_key or not self.audience_id:
            return
        r = await self.http.post(
            f"{self.api_url}/audiences/{self.audience_id}/contacts",
            headers=self._headers,
            json={"email": email, "unsubscribed": False},
        )
        r.raise_for_status()

    async def send_campaign(
        self, *, to: str, subject: str, html_content: str,
        unsubscribe_url: str,
    ) -> Optional[str]:
        """One newsletter issue to one subscriber, with their opt-out link."""
        if not self.api_key:
            log.warning("email.skipped", reason="resend not configured",
                        to=to)
            return None
        html = render_campaign(html_content, unsubscribe_url)
        r = await self.http.post(
            f"{self.api_url}/emails",
            headers=self._headers,
            json={
                "from": self.campaign_sender,
                "to": [to],
                "subject": subject,
                "html": html,
                "headers": {"List-Unsubscribe": f"<{unsubscribe_url}>"},
            },
        )
        r.raise_for_status()
        return r.json().get("id")


# ----------------------------
# Non-critical effects
# ----------------------------
Effect = Tuple[str, Callable[[], Awaitable[object]]]


async def run_effects(effects: List[Effect]) -> Dict[str, bool]:
    """
    Run post-commit side effects one after another. A failure is logged
    and recorded; it never stops the next effect and never propagates.
    """
    outcome: Dict[str, bool] = {}
    for name, fn in effects:
        try:
            await fn()
            outcome[name] = True
        except Exception:
            log.exception("effect.failed", effect=name)
            outcome[name] = False
    return outcome
