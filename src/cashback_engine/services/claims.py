"""Offer claim transitions and the referral reward they trigger."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationConfig
from ..errors import ClaimNotFoundError
from ..models import ClaimStatus, OfferClaim
from .balances import LedgerService

logger = logging.getLogger(__name__)


class ClaimService:
    def __init__(self, session: AsyncSession, config: ReconciliationConfig | None = None) -> None:
        self.session = session
        self.config = config or ReconciliationConfig()
        self.ledger = LedgerService(session)

    async def set_status(self, claim_id: int, status: ClaimStatus) -> tuple[OfferClaim, bool]:
        """Move a claim to ``status``.

        Returns the claim and whether a referral reward was paid. The reward
        is paid only on the move into ``approved``; re-approving is a no-op.
        """

        claim = await self.session.get(OfferClaim, claim_id)
        if claim is None:
            raise ClaimNotFoundError(f"Claim {claim_id} not found")
        rewarded = await self._transition(claim, status)
        return claim, rewarded

    async def approve_for_offer(self, user_id: int, offer_id: int) -> int:
        """Approve the user's pending claims on an offer; returns how many moved."""

        stmt = select(OfferClaim).where(
            OfferClaim.user_id == user_id,
            OfferClaim.offer_id == offer_id,
            OfferClaim.status == ClaimStatus.PENDING,
        )
        claims = list((await self.session.execute(stmt)).scalars())
        moved = 0
        for claim in claims:
            await self._transition(claim, ClaimStatus.APPROVED)
            moved += 1
        return moved

    async def _transition(self, claim: OfferClaim, status: ClaimStatus) -> bool:
        # conditional update so two concurrent approvals reward only once
        stmt = (
            update(OfferClaim)
            .where(OfferClaim.id == claim.id, OfferClaim.status != status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.refresh(claim)
        if result.rowcount == 0:
            return False
        logger.info("Claim %s (user=%s offer=%s) -> %s", claim.id, claim.user_id, claim.offer_id, status.value)
        if status != ClaimStatus.APPROVED:
            return False
        return await self.ledger.credit_referrer_if_eligible(
            claim.user_id,
            self.config.referral_reward,
            reference_id=str(claim.id),
        )


__all__ = ["ClaimService"]
