"""
Credit Ledger - per-user consumable credits and premium entitlement.

The balance is only ever changed by single conditional UPDATE statements
(``credits = credits - cost WHERE credits >= cost``), never by
read-modify-write in Python, so concurrent turns across any number of
server processes cannot overdraw a user. Every mutation is committed,
together with its CreditTransaction audit row, before the call returns.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import async_session_maker, User, CreditTransaction, CreditEntryType
from app.errors import InsufficientCredits, NotFound, StorageError

logger = logging.getLogger(__name__)


class ReservationState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    REFUNDED = "refunded"


@dataclass
class Reservation:
    """Credit already debited for an in-flight turn."""
    user_id: str
    amount: int                      # 0 for premium-unlimited users
    reference: Optional[str] = None  # Execution id the debit is for
    premium: bool = False
    reservation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ReservationState = ReservationState.RESERVED
    created_at: datetime = field(default_factory=datetime.utcnow)


class CreditLedger:
    """Atomic credit operations over the users table."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session_maker):
        self._session_factory = session_factory

    async def check_and_reserve(
        self,
        user_id: str,
        cost: int,
        reference: Optional[str] = None,
    ) -> Reservation:
        """
        Debit ``cost`` credits or fail with InsufficientCredits.

        Premium users are unlimited: nothing is debited and a zero-amount
        reservation is returned.
        """
        if cost < 0:
            raise ValueError("cost must be non-negative")

        async with self._session_factory() as db:
            result = await db.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.is_premium.is_(False),
                    User.credits >= cost,
                )
                .values(credits=User.credits - cost)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.add(CreditTransaction(
                    user_id=user_id,
                    entry_type=CreditEntryType.RESERVE.value,
                    delta=-cost,
                    reference=reference,
                ))
                await db.commit()
                logger.info(f"Reserved {cost} credit(s) for user {user_id} ({reference})")
                return Reservation(user_id=user_id, amount=cost, reference=reference)

            await db.rollback()
            row = (await db.execute(
                select(User.credits, User.is_premium).where(User.id == user_id)
            )).one_or_none()

        if row is None:
            raise NotFound("User not found")
        if row.is_premium:
            return Reservation(user_id=user_id, amount=0, reference=reference, premium=True)

        logger.info(f"Insufficient credits for user {user_id}: balance={row.credits} cost={cost}")
        raise InsufficientCredits(balance=row.credits, cost=cost)

    async def commit(self, reservation: Reservation) -> None:
        """Confirm a reservation. The debit was already applied at reserve time."""
        if reservation.state is not ReservationState.RESERVED:
            logger.warning(
                f"Commit on settled reservation {reservation.reservation_id} ({reservation.state.value})"
            )
            return
        reservation.state = ReservationState.COMMITTED

    async def refund(self, reservation: Reservation) -> bool:
        """
        Return the reserved credits. Only an unsettled reservation can be
        refunded; returns False when it was already committed or refunded.
        """
        if reservation.state is not ReservationState.RESERVED:
            logger.warning(
                f"Refund on settled reservation {reservation.reservation_id} ({reservation.state.value})"
            )
            return False

        if reservation.amount > 0:
            try:
                async with self._session_factory() as db:
                    await db.execute(
                        update(User)
                        .where(User.id == reservation.user_id)
                        .values(credits=User.credits + reservation.amount)
                        .execution_options(synchronize_session=False)
                    )
                    db.add(CreditTransaction(
                        user_id=reservation.user_id,
                        entry_type=CreditEntryType.REFUND.value,
                        delta=reservation.amount,
                        reference=reservation.reference,
                    ))
                    await db.commit()
            except SQLAlchemyError as e:
                raise StorageError("Refund could not be recorded") from e
            logger.info(
                f"Refunded {reservation.amount} credit(s) to user {reservation.user_id} "
                f"({reservation.reference})"
            )

        reservation.state = ReservationState.REFUNDED
        return True

    async def get_balance(self, user_id: str) -> int:
        credits, _ = await self.get_status(user_id)
        return credits

    async def is_premium(self, user_id: str) -> bool:
        _, premium = await self.get_status(user_id)
        return premium

    async def get_status(self, user_id: str) -> Tuple[int, bool]:
        """Return ``(credits, is_premium)`` for a user."""
        async with self._session_factory() as db:
            row = (await db.execute(
                select(User.credits, User.is_premium).where(User.id == user_id)
            )).one_or_none()
        if row is None:
            raise NotFound("User not found")
        return row.credits, row.is_premium

    # ------------------------------------------------------------------
    # Billing-side mutations
    # ------------------------------------------------------------------

    async def grant_credits(self, user_id: str, amount: int, reference: Optional[str] = None) -> None:
        if amount <= 0:
            return
        async with self._session_factory() as db:
            result = await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(credits=User.credits + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise NotFound("User not found")
            db.add(CreditTransaction(
                user_id=user_id,
                entry_type=CreditEntryType.GRANT.value,
                delta=amount,
                reference=reference,
            ))
            await db.commit()
        logger.info(f"Granted {amount} credit(s) to user {user_id} ({reference})")

    async def set_premium(self, user_id: str, value: bool, reference: Optional[str] = None) -> None:
        """Set the premium flag. Callers must have verified the payment event."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_premium=value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise NotFound("User not found")
            db.add(CreditTransaction(
                user_id=user_id,
                entry_type=CreditEntryType.PREMIUM.value,
                delta=0,
                reference=reference,
            ))
            await db.commit()
        logger.info(f"Premium {'enabled' if value else 'disabled'} for user {user_id} ({reference})")

    async def has_reference(self, reference: str) -> bool:
        """True if any ledger entry already records ``reference`` (idempotency)."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(CreditTransaction.id).where(CreditTransaction.reference == reference).limit(1)
            )
            return result.scalar_one_or_none() is not None


# Singleton instance
_credit_ledger: Optional[CreditLedger] = None


def get_credit_ledger() -> CreditLedger:
    """Get the credit ledger singleton."""
    global _credit_ledger
    if _credit_ledger is None:
        _credit_ledger = CreditLedger()
    return _credit_ledger
