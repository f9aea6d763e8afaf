"""
One-time payment for headshot generation via Dodo Payments hosted checkout.
"""

import uuid
import logging
from typing import Optional, Dict, Any, NamedTuple

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENTS = ("payment.succeeded",)


class PaymentError(Exception):
    """The payment provider could not create a session or verify a webhook."""


class CheckoutSession(NamedTuple):
    url: str
    session_id: Optional[str]
    checkout_ref: str


class PaymentEvent(NamedTuple):
    event_type: str
    user_id: Optional[str]
    headshot_id: Optional[str]
    payment_id: Optional[str]
    checkout_ref: Optional[str] = None
    checkout_session_id: Optional[str] = None


def create_headshot_checkout(
    client,
    product_id: str,
    user: Dict[str, Any],
    headshot_id: str,
    public_base_url: str,
) -> CheckoutSession:
    """
    Create a hosted checkout session for one headshot.
    The user/headshot pair and a per-session reference travel in the session
    metadata and come back on the webhook, so the paid session can be told
    apart from abandoned ones.
    """
    if not client or not product_id:
        raise PaymentError("Billing is not configured")

    checkout_ref = uuid.uuid4().hex
    try:
        session = client.checkout_sessions.create(
            product_cart=[{"product_id": product_id, "quantity": 1}],
            customer={"email": user["email"], "name": user.get("name")},
            metadata={"user_id": user["id"], "headshot_id": headshot_id, "checkout_ref": checkout_ref},
            return_url=f"{public_base_url}/dashboard?headshot={headshot_id}",
        )
    except Exception as e:
        logger.error(f"Checkout session creation failed for headshot {headshot_id}: {e}")
        raise PaymentError(f"Failed to create checkout session: {e}") from e

    checkout_url = getattr(session, "checkout_url", None) or getattr(session, "url", None)
    if not checkout_url:
        raise PaymentError("Checkout URL missing from billing provider response")
    return CheckoutSession(
        url=checkout_url,
        session_id=getattr(session, "session_id", None),
        checkout_ref=checkout_ref,
    )


def unwrap_webhook(client, raw_body: bytes, headers: Dict[str, str]) -> Dict[str, Any]:
    """
    Verify the webhook signature and return the decoded payload.
    Raises: PaymentError if the signature does not verify
    """
    try:
        unwrapped = client.webhooks.unwrap(raw_body, headers=headers)
    except Exception as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise PaymentError("Invalid signature") from e

    payload = unwrapped.model_dump() if hasattr(unwrapped, "model_dump") else unwrapped
    return payload if isinstance(payload, dict) else {}


def extract_payment_event(payload: Dict[str, Any]) -> PaymentEvent:
    """Pull the event type, the user/headshot pair and the paid session out of a webhook payload."""
    event_type = payload.get("type", "") or ""
    data = payload.get("data") or {}
    metadata = data.get("metadata") or {}
    return PaymentEvent(
        event_type=event_type,
        user_id=metadata.get("user_id"),
        headshot_id=metadata.get("headshot_id"),
        payment_id=data.get("payment_id") or data.get("id"),
        checkout_ref=metadata.get("checkout_ref"),
        checkout_session_id=data.get("checkout_session_id"),
    )


def is_payment_succeeded(event: PaymentEvent) -> bool:
    return event.event_type in PAYMENT_SUCCEEDED_EVENTS
