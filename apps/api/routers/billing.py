"""Billing router: credit balance, Stripe checkout and payment webhooks."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user, get_auth_context
from routers.rate_limit import rate_limit
from services.context import ServiceContext, get_services
from services.credits import get_credit_summary
from services.webhooks import parse_stripe_event

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    credits: int = Field(default=25, ge=1, le=10000)


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    await ensure_user(db, auth)
    return await get_credit_summary(
        auth.user_id,
        db,
        free_tier_limit=services.settings.FREE_TIER_LIMIT,
        unlimited_credits=services.settings.UNLIMITED_CREDITS,
    )


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    """Create a Stripe Checkout Session selling ``credits`` enhancement credits."""
    config = services.settings
    if not config.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")
    if not config.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    await ensure_user(db, auth)
    # Copied onto the PaymentIntent so refund events can be traced back to the buyer.
    metadata = {"user_id": auth.user_id, "credits": str(request.credits)}
    try:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=config.STRIPE_SECRET_KEY,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": config.CREDIT_CURRENCY,
                        "unit_amount": config.CREDIT_PRICE_CENTS,
                        "product_data": {"name": "Photo enhancement credit"},
                    },
                    "quantity": request.credits,
                }
            ],
            success_url=config.STRIPE_SUCCESS_URL,
            cancel_url=config.STRIPE_CANCEL_URL,
            client_reference_id=auth.user_id,
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout creation failed for user %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=502, detail="Payment provider unavailable. Try again shortly.") from exc

    return {
        "checkout_url": session.url,
        "session_id": session.id,
        "credits": request.credits,
        "amount_cents": request.credits * config.CREDIT_PRICE_CENTS,
        "currency": config.CREDIT_CURRENCY,
    }


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    """Verify and apply a Stripe event. Redelivered events are acknowledged as duplicates."""
    secret = (services.settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise HTTPException(status_code=503, detail="Stripe webhook secret is not configured.")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature or "", secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid webhook payload or signature.") from exc

    event = json.loads(payload)
    payment_event = parse_stripe_event(event)
    if payment_event is None:
        return {"received": True, "ignored": True, "type": event.get("type")}

    outcome = await services.webhooks(db).handle(payment_event)
    return {
        "received": True,
        "event_id": outcome.provider_event_id,
        "duplicate": outcome.duplicate,
        "status": outcome.status,
        "credits_applied": outcome.credits_applied,
    }
