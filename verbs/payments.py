from __future__ import annotations
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict

import stripe
import structlog

from .errors import InvalidSignature

log = structlog.get_logger().bind(component="payments")


def product_name(event_title: str, tier_name: str) -> str:
    return f"{event_title} - {tier_name}"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class ProductAndPrice(TypedDict):
    product_id: str
    price_id: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_session(
        self,
        *,
        price_id: str,
        quantity: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CreateSessionResult: ...

    # returns the parsed event payload, raises InvalidSignature
    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str,
                       secret: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def create_product_and_price(
        self, *, event_id: str, tier_id: str, event_title: str,
        tier_name: str, price: int,
    ) -> ProductAndPrice: ...

    @abstractmethod
    async def replace_price(
        self, *, product_id: str, old_price_id: Optional[str],
        new_price: int, event_id: str, tier_id: str,
    ) -> str: ...

    @abstractmethod
    async def create_refund(
        self, *, payment_intent_id: str, amount: Optional[int] = None
    ) -> str: ...

    @abstractmethod
    async def update_product_name(
        self, *, product_id: str, event_title: str, tier_name: str
    ) -> None: ...

    @abstractmethod
    async def archive_product(self, product_id: str) -> None: ...

    # returns how many products were found for the event
    @abstractmethod
    async def archive_products_for_event(self, event_id: str) -> int: ...


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePayments(PaymentAdapter):
    """
    Thin async face over the synchronous stripe SDK. Every network call runs
    in a worker thread; nothing here retries, Stripe's own webhook redelivery
    is the retry policy for the reconciliation flow.
    """
    currency = "usd"
    product_source = "verbs"

    def __init__(self, secret_key: str) -> None:
        self.api_key = secret_key

    async def _call(self, fn, **params):
        return await asyncio.to_thread(fn, api_key=self.api_key, **params)

    async def create_session(
        self,
        *,
        price_id: str,
        quantity: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CreateSessionResult:
        params: Dict[str, Any] = dict(
            mode="payment",
            line_items=[{"price": price_id, "quantity": quantity}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        if customer_email:
            params["customer_email"] = customer_email
        session = await self._call(stripe.checkout.Session.create, **params)
        return {
            "payment_session_id": session["id"],
            "redirect_url": session["url"],
        }

    def verify_webhook(self, payload: bytes, signature: str,
                       secret: str) -> Dict[str, Any]:
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            log.warning("webhook.signature_invalid", error=str(e))
            raise InvalidSignature("Invalid signature") from e
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise InvalidSignature("Invalid payload") from e

    async def create_product_and_price(
        self, *, event_id: str, tier_id: str, event_title: str,
        tier_name: str, price: int,
    ) -> ProductAndPrice:
        product = await self._call(
            stripe.Product.create,
            name=product_name(event_title, tier_name),
            metadata={"event_id": event_id, "tier_id": tier_id,
                      "source": self.product_source},
        )
        stripe_price = await self._call(
            stripe.Price.create,
            product=product["id"],
            unit_amount=price,
            currency=self.currency,
            metadata={"event_id": event_id, "tier_id": tier_id},
        )
        return {"product_id": product["id"], "price_id": stripe_price["id"]}

    async def replace_price(
        self, *, product_id: str, old_price_id: Optional[str],
        new_price: int, event_id: str, tier_id: str,
    ) -> str:
        # prices are immutable at Stripe: archive and mint a new one
        if old_price_id:
            await self._call(stripe.Price.modify, id=old_price_id,
                             active=False)
        stripe_price = await self._call(
            stripe.Price.create,
            product=product_id,
            unit_amount=new_price,
            currency=self.currency,
            metadata={"event_id": event_id, "tier_id": tier_id},
        )
        return stripe_price["id"]

    async def create_refund(
        self, *, payment_intent_id: str, amount: Optional[int] = None
    ) -> str:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount:
            params["amount"] = amount  # omitted = full refund
        refund = await self._call(stripe.Refund.create, **params)
        return refund["id"]

    async def update_product_name(
        self, *, product_id: str, event_title: str, tier_name: str
    ) -> None:
        await self._call(stripe.Product.modify, id=product_id,
                         name=product_name(event_title, tier_name))

    async def archive_product(self, product_id: str) -> None:
        # an inactive product can no longer be put into a checkout
        await self._call(stripe.Product.modify, id=product_id, active=False)

    async def archive_products_for_event(self, event_id: str) -> int:
        found = await self._call(
            stripe.Product.search,
            query=(f"metadata['event_id']:'{event_id}' AND "
                   f"metadata['source']:'{self.product_source}'"),
            limit=100,
        )
        products = found["data"]
        for product in products:
            if product["active"]:
                await self.archive_product(product["id"])
        log.info("stripe.products_archived", event_id=event_id,
                 count=len(products))
        return len(products)
