"""
Stripe billing for the premium plan.

Premium is granted only from a verified webhook event; the checkout redirect
itself grants nothing. Each Stripe event id is recorded as the reference of
the ledger entry it produced, so redelivered events are no-ops.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import User
from app.errors import BadRequest, PaymentError
from app.services.credit_ledger import CreditLedger, get_credit_ledger

logger = logging.getLogger(__name__)

PLAN_PRICE_MAP = {
    "monthly": "stripe_monthly_price_id",
    "yearly": "stripe_yearly_price_id",
}


def _get_stripe_client() -> stripe.StripeClient:
    if not settings.stripe_secret_key:
        raise PaymentError("Billing is not configured")
    return stripe.StripeClient(settings.stripe_secret_key)


def list_plans() -> List[Dict[str, Any]]:
    """Plan catalogue as shown on the pricing screen"""
    return [{
        "name": "Premium",
        "plan_id": "premium",
        "monthly_price": settings.plan_monthly_price,
        "currency": settings.plan_currency,
        "symbol": settings.plan_symbol,
        "pricing_currency": [{
            "plan_id": "premium",
            "monthly_price": settings.plan_monthly_price,
            "annual_price": settings.plan_yearly_price,
            "currency": settings.plan_currency,
            "symbol": settings.plan_symbol,
        }],
    }]


def create_checkout_session(user: User, plan_type: str) -> Dict[str, str]:
    """
    Create a Stripe Checkout Session for the premium subscription.

    Returns ``{"orderId": "cs_...", "url": "https://checkout.stripe.com/..."}``.
    The user id travels in the session and subscription metadata so the
    webhook can find the account.
    """
    price_id_attr = PLAN_PRICE_MAP.get(plan_type)
    if not price_id_attr:
        raise BadRequest(f"Unknown plan type: {plan_type}")

    stripe_price_id: str = getattr(settings, price_id_attr, "")
    if not stripe_price_id:
        raise PaymentError(f"Price for the {plan_type} plan is not configured")

    client = _get_stripe_client()
    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": stripe_price_id, "quantity": 1}],
        "success_url": settings.billing_success_url,
        "cancel_url": settings.billing_cancel_url,
        "client_reference_id": user.id,
        "metadata": {"user_id": user.id, "plan_type": plan_type},
        "subscription_data": {"metadata": {"user_id": user.id, "plan_type": plan_type}},
    }
    if user.stripe_customer_id:
        params["customer"] = user.stripe_customer_id
    else:
        params["customer_email"] = user.email

    try:
        session = client.checkout.sessions.create(params=params)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout creation failed for user {user.id}: {e}")
        raise PaymentError("Could not start checkout") from e

    logger.info(f"Checkout session {session.id} created for user {user.id} ({plan_type})")
    return {"orderId": session.id, "url": session.url}


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify a Stripe webhook signature and return the event as a dict."""
    if not settings.stripe_webhook_secret:
        raise PaymentError("Webhook secret is not configured")
    if not sig_header:
        raise PaymentError("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise PaymentError("Invalid webhook signature")
    except ValueError:
        raise PaymentError("Invalid webhook payload")
    # Handlers work on the plain JSON body
    return json.loads(payload)


async def _find_user(db: AsyncSession, obj: Dict[str, Any]) -> Optional[User]:
    metadata = obj.get("metadata") or {}
    user_id = metadata.get("user_id") or obj.get("client_reference_id")
    if user_id:
        user = await db.get(User, user_id)
        if user is not None:
            return user
    customer = obj.get("customer")
    if customer:
        result = await db.execute(select(User).where(User.stripe_customer_id == customer))
        return result.scalar_one_or_none()
    return None


async def handle_event(
    db: AsyncSession,
    event: Dict[str, Any],
    ledger: Optional[CreditLedger] = None,
) -> str:
    """
    Apply a verified event. Returns what happened: ``"premium_granted"``,
    ``"premium_revoked"``, ``"duplicate"`` or ``"ignored"``.
    """
    ledger = ledger or get_credit_ledger()
    event_id = event.get("id", "")
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type not in ("checkout.session.completed", "customer.subscription.deleted"):
        logger.debug(f"Ignoring Stripe event {event_type}")
        return "ignored"

    if event_id and await ledger.has_reference(event_id):
        logger.info(f"Stripe event {event_id} already applied")
        return "duplicate"

    user = await _find_user(db, obj)
    if user is None:
        logger.error(f"Stripe event {event_id} ({event_type}) matches no user")
        return "ignored"

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
            logger.info(f"Checkout {obj.get('id')} not paid yet ({obj.get('payment_status')})")
            return "ignored"
        if obj.get("customer") and user.stripe_customer_id != obj["customer"]:
            user.stripe_customer_id = obj["customer"]
            await db.commit()
        await ledger.set_premium(user.id, True, reference=event_id)
        await ledger.grant_credits(user.id, settings.premium_bonus_credits, reference=f"{event_id}:bonus")
        return "premium_granted"

    await ledger.set_premium(user.id, False, reference=event_id)
    return "premium_revoked"
