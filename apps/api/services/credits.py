"""Credit ledger: reservations, idempotent grants and the balance audit trail."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger as LedgerEntry
from models.credit_reservation import CreditReservation, ReservationState
from models.user import User
from services.errors import (
    InsufficientCreditsError,
    InvalidReservationStateError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_UNLIMITED_CREDITS = 999999


@dataclass(frozen=True)
class GrantResult:
    applied: bool
    balance_after: int
    entry_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger:
    """Single writer of ``users.credits``.

    Methods flush but never commit; the caller owns the unit of work so a reservation
    commits together with the photo transition it pays for. Balance changes are
    conditional UPDATEs issued before any read, which takes the user row lock first and
    makes check-and-debit one atomic step.
    """

    def __init__(self, db: AsyncSession, *, unlimited_credits: int = DEFAULT_UNLIMITED_CREDITS):
        self.db = db
        self.unlimited_credits = int(unlimited_credits)

    def is_unlimited(self, credits: Optional[int]) -> bool:
        return int(credits or 0) >= self.unlimited_credits

    async def get_balance(self, user_id: str) -> int:
        result = await self.db.execute(select(User.credits).where(User.id == user_id))
        credits = result.scalar_one_or_none()
        if credits is None:
            raise NotFoundError(f"User {user_id} not found.")
        return int(credits)

    async def reserve(self, user_id: str, *, photo_id: Optional[str] = None) -> str:
        """Deduct one credit now and hold it until the attempt resolves."""
        debit = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.credits > 0,
                User.credits < self.unlimited_credits,
            )
            .values(credits=User.credits - 1)
            .execution_options(synchronize_session=False)
        )
        balance = await self.get_balance(user_id)
        balance_applied = debit.rowcount == 1
        if not balance_applied and not self.is_unlimited(balance):
            raise InsufficientCreditsError(user_id, balance)

        reservation = CreditReservation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            photo_id=photo_id,
            amount=1,
            state=ReservationState.HELD.value,
            balance_applied=balance_applied,
        )
        self.db.add(reservation)
        self._record(
            user_id,
            entry_type="reserve",
            delta=-1 if balance_applied else 0,
            balance_after=balance,
            reason="Credit reserved for enhancement",
            reference_type="credit_reservation",
            reference_id=reservation.id,
        )
        await self.db.flush()
        logger.info("Reserved credit %s for user %s (balance=%s)", reservation.id, user_id, balance)
        return reservation.id

    async def commit(self, reservation_id: str) -> None:
        """Settle a held credit. The balance already reflects the spend."""
        await self._resolve(reservation_id, ReservationState.COMMITTED)
        await self.db.flush()

    async def refund(self, reservation_id: str) -> int:
        """Return a held credit to the balance. Rejected unless the reservation is HELD."""
        reservation = await self._resolve(reservation_id, ReservationState.REFUNDED)
        amount = int(reservation.amount or 0) if reservation.balance_applied else 0
        if amount:
            await self.db.execute(
                update(User)
                .where(User.id == reservation.user_id)
                .values(credits=User.credits + amount)
                .execution_options(synchronize_session=False)
            )
        balance = await self.get_balance(reservation.user_id)
        self._record(
            reservation.user_id,
            entry_type="refund",
            delta=amount,
            balance_after=balance,
            reason="Credit refunded after failed enhancement",
            reference_type="credit_reservation",
            reference_id=reservation.id,
        )
        await self.db.flush()
        logger.info("Refunded reservation %s for user %s (balance=%s)", reservation_id, reservation.user_id, balance)
        return balance

    async def grant(
        self,
        user_id: str,
        amount: int,
        idempotency_key: str,
        *,
        provider: str = "stripe",
        reason: str = "Credit purchase",
    ) -> GrantResult:
        """Add purchased credits once per idempotency key.

        A key that was already applied returns the prior result without touching the
        balance. A concurrent duplicate that slips past the lookup fails on the unique key
        with ``IntegrityError``; the caller owns the transaction and rolls it back.
        """
        prior = await self._entry_for_key(idempotency_key)
        if prior is not None:
            logger.info("Grant %s already applied; skipping", idempotency_key)
            return GrantResult(applied=False, balance_after=int(prior.balance_after or 0), entry_id=prior.id)

        credits = int(amount)
        if credits <= 0:
            raise ValidationError("Granted credits must be greater than 0.")

        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + credits)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"User {user_id} not found.")
        balance = await self.get_balance(user_id)
        entry = self._record(
            user_id,
            entry_type="grant",
            delta=credits,
            balance_after=balance,
            reason=reason,
            reference_type="payment_event",
            reference_id=idempotency_key,
            billing_provider=provider,
            idempotency_key=idempotency_key,
        )
        await self.db.flush()

        logger.info("Granted %s credits to user %s via %s (balance=%s)", credits, user_id, idempotency_key, balance)
        return GrantResult(applied=True, balance_after=balance, entry_id=entry.id)

    async def clawback(
        self,
        user_id: str,
        amount: int,
        idempotency_key: str,
        *,
        provider: str = "stripe",
        reason: str = "Payment reversed",
    ) -> GrantResult:
        """Remove up to ``amount`` credits, never taking the balance below zero."""
        prior = await self._entry_for_key(idempotency_key)
        if prior is not None:
            return GrantResult(applied=False, balance_after=int(prior.balance_after or 0), entry_id=prior.id)

        result = await self.db.execute(select(User.credits).where(User.id == user_id).with_for_update())
        current = result.scalar_one_or_none()
        if current is None:
            raise NotFoundError(f"User {user_id} not found.")

        deducted = 0 if self.is_unlimited(current) else min(int(current), max(int(amount), 0))
        if deducted:
            await self.db.execute(
                update(User)
                .where(User.id == user_id, User.credits >= deducted)
                .values(credits=User.credits - deducted)
                .execution_options(synchronize_session=False)
            )
        balance = await self.get_balance(user_id)
        entry = self._record(
            user_id,
            entry_type="clawback",
            delta=-deducted,
            balance_after=balance,
            reason=reason,
            reference_type="payment_event",
            reference_id=idempotency_key,
            billing_provider=provider,
            idempotency_key=idempotency_key,
        )
        await self.db.flush()
        if deducted < int(amount):
            logger.warning(
                "Clawback %s for user %s limited to %s of %s credits (already spent)",
                idempotency_key,
                user_id,
                deducted,
                amount,
            )
        return GrantResult(applied=True, balance_after=balance, entry_id=entry.id)

    async def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        result = await self.db.execute(
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _resolve(self, reservation_id: str, target: ReservationState) -> CreditReservation:
        result = await self.db.execute(
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.state == ReservationState.HELD.value,
            )
            .values(state=target.value, resolved_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        reservation = await self.get_reservation(reservation_id)
        if result.rowcount != 1 or reservation is None:
            state = reservation.state if reservation is not None else None
            logger.error(
                "Ledger integrity violation: reservation %s cannot move to %s from %s",
                reservation_id,
                target.value,
                state or "missing",
            )
            raise InvalidReservationStateError(reservation_id, state)
        return reservation

    async def _entry_for_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        result = await self.db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key))
        return result.scalar_one_or_none()

    def _record(
        self,
        user_id: str,
        *,
        entry_type: str,
        delta: int,
        balance_after: int,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        billing_provider: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            entry_type=entry_type,
            delta_credits=int(delta),
            balance_after=int(balance_after),
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            billing_provider=billing_provider,
            idempotency_key=idempotency_key,
        )
        self.db.add(entry)
        return entry


async def get_credit_summary(
    user_id: str,
    db: AsyncSession,
    *,
    free_tier_limit: int,
    unlimited_credits: int = DEFAULT_UNLIMITED_CREDITS,
) -> Dict[str, Any]:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")

    entries_result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc())
        .limit(30)
    )
    entries = entries_result.scalars().all()
    used = int(user.free_enhancements_used or 0)
    limit = max(int(free_tier_limit), 0)
    return {
        "balance": int(user.credits or 0),
        "unlimited": int(user.credits or 0) >= int(unlimited_credits),
        "free_tier": {
            "limit": limit,
            "used": used,
            "remaining": max(limit - used, 0),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
