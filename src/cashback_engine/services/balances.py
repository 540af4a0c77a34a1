"""Wallet ledger helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import BalanceLedger, LedgerEntryType, User

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(slots=True)
class WalletSnapshot:
    wallet: Decimal
    total_cashback: Decimal


class LedgerService:
    """Applies wallet credits and their reversals.

    Balances are changed with single ``UPDATE ... SET wallet = wallet + :amount``
    statements so concurrent credits to one user never overwrite each other.
    Every method runs inside the caller's transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def wallet(self, user_id: int) -> WalletSnapshot:
        stmt = select(User.wallet, User.total_cashback).where(User.id == user_id)
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return WalletSnapshot(wallet=ZERO, total_cashback=ZERO)
        wallet, total = row
        return WalletSnapshot(wallet=Decimal(wallet or 0), total_cashback=Decimal(total or 0))

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        *,
        entry_type: LedgerEntryType = LedgerEntryType.CREDIT,
        reference_type: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        if amount <= ZERO:
            return False
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                wallet=User.wallet + amount,
                total_cashback=User.total_cashback + amount,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("Wallet credit skipped, user %s not found", user_id)
            return False
        await self._journal(user_id, entry_type, amount, reference_type, reference_id, notes)
        logger.info("Credited %s to user %s (%s %s)", amount, user_id, reference_type, reference_id)
        return True

    async def reverse(
        self,
        user_id: int,
        amount: Decimal,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        if amount <= ZERO:
            return False
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                wallet=case((User.wallet < amount, ZERO), else_=User.wallet - amount),
                total_cashback=case(
                    (User.total_cashback < amount, ZERO),
                    else_=User.total_cashback - amount,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("Wallet reversal skipped, user %s not found", user_id)
            return False
        await self._journal(
            user_id, LedgerEntryType.REVERSAL, amount, reference_type, reference_id, notes
        )
        logger.info("Reversed %s from user %s (%s %s)", amount, user_id, reference_type, reference_id)
        return True

    async def credit_referrer_if_eligible(
        self,
        user_id: int,
        reward_amount: Decimal,
        *,
        reference_id: str | None = None,
    ) -> bool:
        """Credit ``reward_amount`` to whoever referred ``user_id``, if anyone."""

        stmt = select(User.referred_by_id).where(User.id == user_id)
        referrer_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if referrer_id is None or referrer_id == user_id:
            return False
        return await self.credit(
            referrer_id,
            reward_amount,
            entry_type=LedgerEntryType.REFERRAL,
            reference_type="claim",
            reference_id=reference_id,
            notes=f"referral_reward_for_user_{user_id}",
        )

    async def _journal(
        self,
        user_id: int,
        entry_type: LedgerEntryType,
        amount: Decimal,
        reference_type: str | None,
        reference_id: str | None,
        notes: str | None,
    ) -> BalanceLedger:
        entry = BalanceLedger(
            user_id=user_id,
            type=entry_type,
            amount=amount,
            currency=settings.payout_currency,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry


__all__ = ["LedgerService", "WalletSnapshot"]
