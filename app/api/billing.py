"""Billing endpoints - premium plan checkout and Stripe webhooks"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import get_current_user
from app.db import get_db, User
from app.schemas import PlanResponse, SubscribeRequest, SubscribeResponse, WebhookResponse
from app.services import billing_service
from app.services.credit_ledger import CreditLedger, get_credit_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.get("/plans", response_model=List[PlanResponse])
async def get_plans():
    return billing_service.list_plans()


@router.post("/init-subscribe", response_model=SubscribeResponse)
async def init_subscribe(
    request: SubscribeRequest,
    current_user: User = Depends(get_current_user),
):
    """Start a Stripe Checkout for the premium plan. Premium is granted by the webhook."""
    session = billing_service.create_checkout_session(current_user, request.plan_type)
    return SubscribeResponse(order_id=session["orderId"], url=session["url"])


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    payload = await request.body()
    event = billing_service.verify_webhook(payload, request.headers.get("stripe-signature"))
    result = await billing_service.handle_event(db, event, ledger=ledger)
    logger.info(f"Stripe event {event.get('id')} ({event.get('type')}): {result}")
    return WebhookResponse(result=result)
