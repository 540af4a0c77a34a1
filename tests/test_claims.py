from decimal import Decimal

import pytest
from sqlalchemy import select

from cashback_engine.config import ReconciliationConfig
from cashback_engine.errors import ClaimNotFoundError
from cashback_engine.models import ClaimStatus, User
from cashback_engine.services.balances import LedgerService
from cashback_engine.services.claims import ClaimService
from cashback_engine.services.users import UserService


@pytest.mark.asyncio
async def test_register_binds_referrer(session, make_user):
    referrer = await make_user()

    user = await UserService(session).register(
        name="Asha", email=" Asha@Example.com ", referral_code=referrer.referral_code.lower()
    )
    await session.commit()

    assert user.email == "asha@example.com"
    assert user.referred_by_id == referrer.id
    count = (
        await session.execute(select(User.referrals_count).where(User.id == referrer.id))
    ).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_unknown_referral_code_is_ignored(session):
    user = await UserService(session).register(name="x", email="x@example.com", referral_code="NOPE")
    assert user.referred_by_id is None


@pytest.mark.asyncio
async def test_approval_rewards_referrer_once(session, make_user, make_offer, make_claim):
    referrer = await make_user()
    user = await make_user(referral_code=referrer.referral_code)
    offer = await make_offer()
    claim = await make_claim(user, offer)
    service = ClaimService(session, ReconciliationConfig(referral_reward=Decimal("7")))

    _, first = await service.set_status(claim.id, ClaimStatus.APPROVED)
    updated, second = await service.set_status(claim.id, ClaimStatus.APPROVED)
    await session.commit()

    assert first is True
    assert second is False
    assert updated.status == ClaimStatus.APPROVED
    assert (await LedgerService(session).wallet(referrer.id)).wallet == Decimal("7")


@pytest.mark.asyncio
async def test_rejection_pays_nothing(session, make_user, make_offer, make_claim):
    referrer = await make_user()
    user = await make_user(referral_code=referrer.referral_code)
    offer = await make_offer()
    claim = await make_claim(user, offer)

    claim, rewarded = await ClaimService(session).set_status(claim.id, ClaimStatus.REJECTED)

    assert rewarded is False
    assert claim.status == ClaimStatus.REJECTED
    assert (await LedgerService(session).wallet(referrer.id)).wallet == Decimal("0")


@pytest.mark.asyncio
async def test_unknown_claim(session):
    with pytest.raises(ClaimNotFoundError):
        await ClaimService(session).set_status(404, ClaimStatus.APPROVED)
