"""Free-tier and credit authorization for enhancement requests."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update

from models.user import User
from services.credits import CreditLedger
from services.errors import InvalidReservationStateError

logger = logging.getLogger(__name__)

FREE_TIER_LIMIT = 2


class ReleaseOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class AuthorizationResult:
    used_free_slot: bool
    reservation_id: Optional[str] = None


class QuotaEnforcer:
    """Decides whether an enhancement may start, preferring the free tier."""

    def __init__(self, ledger: CreditLedger, *, free_tier_limit: int = FREE_TIER_LIMIT):
        self.ledger = ledger
        self.free_tier_limit = max(int(free_tier_limit), 0)

    async def authorize(self, user_id: str, *, photo_id: Optional[str] = None) -> AuthorizationResult:
        """Consume a free slot if one is left, otherwise reserve a credit.

        Raises InsufficientCreditsError unchanged when neither is available.
        """
        claimed = await self.ledger.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.free_enhancements_used < self.free_tier_limit,
            )
            .values(free_enhancements_used=User.free_enhancements_used + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            logger.info("User %s authorized on free tier", user_id)
            return AuthorizationResult(used_free_slot=True)

        reservation_id = await self.ledger.reserve(user_id, photo_id=photo_id)
        return AuthorizationResult(used_free_slot=False, reservation_id=reservation_id)

    async def release(self, user_id: str, authorization: AuthorizationResult, outcome: ReleaseOutcome) -> None:
        if authorization.used_free_slot:
            if outcome is ReleaseOutcome.FAILURE:
                # A failed attempt must not burn the free allotment.
                await self.ledger.db.execute(
                    update(User)
                    .where(User.id == user_id, User.free_enhancements_used > 0)
                    .values(free_enhancements_used=User.free_enhancements_used - 1)
                    .execution_options(synchronize_session=False)
                )
                logger.info("Restored free-tier slot for user %s", user_id)
            return

        if not authorization.reservation_id:
            logger.error("Release for user %s has neither a free slot nor a reservation", user_id)
            raise InvalidReservationStateError("<none>", None)

        if outcome is ReleaseOutcome.SUCCESS:
            await self.ledger.commit(authorization.reservation_id)
        else:
            await self.ledger.refund(authorization.reservation_id)
