"""
Stripe checkout glue.

The buyer's email travels in the checkout session metadata, so a paid
session can be traced back to its user without a local orders table.
Both the redirect path and the webhook end in ``reconcile``, which is safe
to repeat.
"""
from typing import Optional

import stripe
import structlog
from fastapi import HTTPException, Request
from pydantic import BaseModel
from pymongo.database import Database

from database import USERS
from schemas import CartItem

logger = structlog.get_logger(__name__)

PAID = "paid"
SESSION_COMPLETED = "checkout.session.completed"


class PaymentError(Exception):
    """The payment processor failed or is not configured."""


class InvalidEvent(Exception):
    """A webhook payload or its signature did not check out."""


class CheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None
    payment_status: Optional[str] = None
    email: Optional[str] = None


class WebhookEvent(BaseModel):
    type: str
    session: Optional[CheckoutSession] = None


def _session_from_stripe(obj) -> CheckoutSession:
    metadata = obj["metadata"] or {}
    return CheckoutSession(
        id=obj["id"],
        url=obj["url"] if "url" in obj else None,
        payment_status=obj["payment_status"] if "payment_status" in obj else None,
        email=metadata["email"] if "email" in metadata else None,
    )


class StripeGateway:
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str], site_domain: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.site_domain = site_domain.rstrip("/")

    def create_session(self, item: CartItem) -> CheckoutSession:
        if not self.api_key:
            raise PaymentError("Stripe is not configured")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                customer_email=item.email,
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "unit_amount": int(round(item.price * 100)),
                            "product_data": {"name": item.name},
                        },
                        "quantity": item.quantity,
                    }
                ],
                metadata={"email": item.email},
                success_url=f"{self.site_domain}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.site_domain}/payment-cancelled",
            )
        except stripe.StripeError as e:
            raise PaymentError(str(e))
        return _session_from_stripe(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        if not self.api_key:
            raise PaymentError("Stripe is not configured")
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise PaymentError(str(e))
        return _session_from_stripe(session)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            raise PaymentError("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except ValueError:
            raise InvalidEvent("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidEvent("Invalid signature")
        session = None
        if event["type"] == SESSION_COMPLETED:
            session = _session_from_stripe(event["data"]["object"])
        return WebhookEvent(type=event["type"], session=session)


def get_payment_gateway(request: Request):
    gateway = getattr(request.app.state, "payments", None)
    if gateway is None:
        raise HTTPException(status_code=500, detail="Payments are not configured")
    return gateway


def reconcile(db: Database, session: CheckoutSession) -> bool:
    """Upgrade the buyer of a paid session. Returns whether it was paid."""
    if session.payment_status != PAID or not session.email:
        return False
    result = db[USERS].update_one(
        {"email": session.email},
        {"$set": {"paymentStatus": "Paid", "role": "Premium"}},
    )
    logger.info(
        "payment_reconciled",
        session_id=session.id,
        email=session.email,
        matched=result.matched_count,
        modified=result.modified_count,
    )
    return True
