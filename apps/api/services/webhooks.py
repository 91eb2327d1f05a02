"""Payment-provider events reconciled into purchases and idempotent credit top-ups."""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.purchase import Purchase, PurchaseStatus
from services.credits import CreditLedger
from services.errors import ValidationError

logger = logging.getLogger(__name__)

STRIPE_EVENT_STATUSES = {
    "checkout.session.async_payment_succeeded": PurchaseStatus.COMPLETED,
    "checkout.session.async_payment_failed": PurchaseStatus.FAILED,
    "charge.refunded": PurchaseStatus.REFUNDED,
}
PAID_CHECKOUT_STATES = {"paid", "no_payment_required"}

# Outcome an earlier PENDING purchase of the same payment settles to.
SETTLED_STATUS = {
    PurchaseStatus.COMPLETED: PurchaseStatus.COMPLETED,
    PurchaseStatus.FAILED: PurchaseStatus.FAILED,
    PurchaseStatus.REFUNDED: PurchaseStatus.COMPLETED,
}


class ChargebackPolicy(str, enum.Enum):
    IGNORE = "ignore"
    CLAWBACK = "clawback"


@dataclass(frozen=True)
class PaymentEvent:
    provider_event_id: str
    user_id: Optional[str]
    credits_granted: int
    amount_paid: float
    status: PurchaseStatus
    payment_reference: Optional[str] = None


@dataclass(frozen=True)
class WebhookOutcome:
    provider_event_id: str
    duplicate: bool
    status: Optional[str] = None
    purchase_id: Optional[str] = None
    credits_applied: int = 0
    balance_after: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentWebhookHandler:
    """Records each provider event once and applies its balance effect once.

    Delivery is at-least-once and unordered. ``purchases.provider_event_id`` and
    ``credit_ledger.idempotency_key`` are both unique, so a duplicate that races past
    the lookup loses on insert and is reported as a no-op.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: CreditLedger,
        *,
        chargeback_policy: ChargebackPolicy | str = ChargebackPolicy.IGNORE,
        provider: str = "stripe",
    ):
        self.db = db
        self.ledger = ledger
        self.chargeback_policy = ChargebackPolicy(chargeback_policy)
        self.provider = provider

    async def handle(self, event: PaymentEvent) -> WebhookOutcome:
        return await self.handle_event(
            event.provider_event_id,
            event.user_id,
            event.credits_granted,
            event.amount_paid,
            event.status,
            payment_reference=event.payment_reference,
        )

    async def handle_event(
        self,
        provider_event_id: str,
        user_id: Optional[str],
        credits_granted: int,
        amount_paid: float,
        status: PurchaseStatus | str,
        *,
        payment_reference: Optional[str] = None,
    ) -> WebhookOutcome:
        if not provider_event_id:
            raise ValidationError("Payment event id is required.")
        try:
            status = PurchaseStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown payment status '{status}'.") from None
        credits = int(credits_granted or 0)
        if credits < 0:
            raise ValidationError("Granted credits cannot be negative.")

        existing = await self._purchase_for_event(provider_event_id)
        if existing is not None:
            logger.info("Payment event %s already processed; acknowledging", provider_event_id)
            return WebhookOutcome(provider_event_id, duplicate=True, status=existing.status, purchase_id=existing.id)

        original = await self._original_purchase(payment_reference)
        if not user_id and original is not None:
            user_id = original.user_id
        if not user_id:
            raise ValidationError(f"Payment event {provider_event_id} does not identify a user.")
        await self.ledger.get_balance(user_id)

        now = _utcnow()
        purchase = Purchase(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=self.provider,
            provider_event_id=provider_event_id,
            payment_reference=payment_reference,
            credits_granted=credits,
            amount_paid=float(amount_paid or 0.0),
            status=status.value,
            processed_at=now,
        )
        credits_applied = 0
        balance_after: Optional[int] = None
        try:
            self.db.add(purchase)
            await self.db.flush()

            if status is PurchaseStatus.COMPLETED and credits > 0:
                grant = await self.ledger.grant(
                    user_id,
                    credits,
                    provider_event_id,
                    provider=self.provider,
                    reason=f"Purchased {credits} credits",
                )
                if not grant.applied:
                    await self.db.rollback()
                    return WebhookOutcome(provider_event_id, duplicate=True, status=status.value)
                credits_applied = credits
                balance_after = grant.balance_after
            elif status is PurchaseStatus.REFUNDED:
                purchase.credits_granted = await self._newly_refunded_credits(purchase, credits)
                await self.db.flush()
                reversed_credits = int(purchase.credits_granted)
                if self.chargeback_policy is ChargebackPolicy.CLAWBACK and reversed_credits > 0:
                    balance_before = await self.ledger.get_balance(user_id)
                    clawback = await self.ledger.clawback(
                        user_id,
                        reversed_credits,
                        f"clawback:{provider_event_id}",
                        provider=self.provider,
                        reason="Payment refunded",
                    )
                    balance_after = clawback.balance_after
                    credits_applied = balance_after - balance_before
            elif status is PurchaseStatus.PENDING and payment_reference:
                # The payment may already have settled through an earlier delivery.
                settled = await self._settled_status(payment_reference, exclude_id=purchase.id)
                if settled is not None:
                    purchase.status = settled.value
                    await self.db.flush()

            if payment_reference and status is not PurchaseStatus.PENDING:
                await self.db.execute(
                    update(Purchase)
                    .where(
                        Purchase.payment_reference == payment_reference,
                        Purchase.status == PurchaseStatus.PENDING.value,
                        Purchase.id != purchase.id,
                    )
                    .values(status=SETTLED_STATUS[status].value, processed_at=now)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Concurrent duplicate of payment event %s ignored", provider_event_id)
            return WebhookOutcome(provider_event_id, duplicate=True, status=status.value)

        logger.info(
            "Recorded %s payment event %s for user %s as %s (credits applied=%s)",
            status.value,
            provider_event_id,
            user_id,
            purchase.status,
            credits_applied,
        )
        return WebhookOutcome(
            provider_event_id,
            duplicate=False,
            status=purchase.status,
            purchase_id=purchase.id,
            credits_applied=credits_applied,
            balance_after=balance_after,
        )

    async def _purchase_for_event(self, provider_event_id: str) -> Optional[Purchase]:
        result = await self.db.execute(
            select(Purchase).where(Purchase.provider_event_id == provider_event_id)
        )
        return result.scalar_one_or_none()

    async def _original_purchase(self, payment_reference: Optional[str], *, lock: bool = False) -> Optional[Purchase]:
        """The purchase that carried the payment's credits; refund rows never qualify."""
        if not payment_reference:
            return None
        query = (
            select(Purchase)
            .where(
                Purchase.payment_reference == payment_reference,
                Purchase.status != PurchaseStatus.REFUNDED.value,
            )
            .order_by(Purchase.credits_granted.desc(), Purchase.created_at.asc())
            .limit(1)
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _newly_refunded_credits(self, refund: Purchase, requested: int) -> int:
        """Credits reversed by this refund event and by no earlier one.

        Refunded amounts are cumulative per payment (Stripe's ``amount_refunded``), so
        each event recomputes the refunded share of the original credits and subtracts
        what earlier refund events of the payment already reversed. The running total
        never exceeds the credits the original purchase carried.
        """
        if not refund.payment_reference:
            return max(int(requested), 0)

        original = await self._original_purchase(refund.payment_reference, lock=True)
        if original is None:
            share = int(requested)
        else:
            granted = int(original.credits_granted or 0)
            paid_cents = int(round(float(original.amount_paid or 0.0) * 100))
            refunded_cents = int(round(float(refund.amount_paid or 0.0) * 100))
            if paid_cents > 0 and refunded_cents > 0:
                share = granted * min(refunded_cents, paid_cents) // paid_cents
            else:
                share = granted

        result = await self.db.execute(
            select(func.coalesce(func.sum(Purchase.credits_granted), 0)).where(
                Purchase.payment_reference == refund.payment_reference,
                Purchase.status == PurchaseStatus.REFUNDED.value,
                Purchase.id != refund.id,
            )
        )
        already_reversed = int(result.scalar_one() or 0)
        return max(share - already_reversed, 0)

    async def _settled_status(self, payment_reference: str, *, exclude_id: str) -> Optional[PurchaseStatus]:
        result = await self.db.execute(
            select(Purchase.status)
            .where(
                Purchase.payment_reference == payment_reference,
                Purchase.status != PurchaseStatus.PENDING.value,
                Purchase.id != exclude_id,
            )
            .order_by(Purchase.processed_at.desc())
            .limit(1)
        )
        status = result.scalar_one_or_none()
        if status is None:
            return None
        return SETTLED_STATUS[PurchaseStatus(status)]


def parse_stripe_event(event: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Map a verified Stripe event onto a PaymentEvent; unrelated types return None."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        status = (
            PurchaseStatus.COMPLETED
            if obj.get("payment_status") in PAID_CHECKOUT_STATES
            else PurchaseStatus.PENDING
        )
    elif event_type in STRIPE_EVENT_STATUSES:
        status = STRIPE_EVENT_STATUSES[event_type]
    else:
        return None

    event_id = event.get("id")
    if not event_id:
        raise ValidationError("Stripe event is missing its id.")

    metadata = obj.get("metadata") or {}
    try:
        credits = int(metadata.get("credits") or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Stripe event {event_id} has invalid credits metadata.") from None

    if event_type == "charge.refunded":
        amount_cents = obj.get("amount_refunded") or 0
    else:
        amount_cents = obj.get("amount_total") or 0

    return PaymentEvent(
        provider_event_id=str(event_id),
        user_id=metadata.get("user_id") or obj.get("client_reference_id"),
        credits_granted=credits,
        amount_paid=round(float(amount_cents) / 100.0, 2),
        status=status,
        payment_reference=obj.get("payment_intent") or obj.get("id"),
    )
