from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cashback_engine.config import ReconciliationConfig
from cashback_engine.models import (
    BalanceLedger,
    ClaimStatus,
    Conversion,
    ConversionStatus,
    LedgerEntryType,
    OfferClaim,
    User,
)
from cashback_engine.services.balances import LedgerService
from cashback_engine.services.clicks import ClickService
from cashback_engine.services.conversions import PostbackProcessor


@pytest.fixture
def processor(session_factory):
    return PostbackProcessor(session_factory, ReconciliationConfig(referral_reward=Decimal("5")))


async def _wallet(session_factory, user_id):
    async with session_factory() as session:
        return (await LedgerService(session).wallet(user_id)).wallet


@pytest.mark.asyncio
async def test_approved_postback_converts_and_credits_once(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-TEST1")
    payload = {"click_id": "CLID-TEST1", "payout": "10", "status": "approved"}

    first = await processor.handle_postback(payload)
    second = await processor.handle_postback(payload)

    assert first.success and first.matched and not first.duplicate
    assert second.success and second.duplicate
    assert second.reason == "click_id_unique_constraint"
    assert second.conversion_record_id == first.conversion_record_id
    async with session_factory() as session:
        click = await ClickService(session).find_by_click_id("CLID-TEST1")
        assert click.converted is True
        assert click.conversion_value == Decimal("10")
        assert click.conversion_id == str(first.conversion_record_id)
    assert await _wallet(session_factory, user.id) == Decimal("10")


@pytest.mark.asyncio
async def test_repeated_postbacks_pay_exactly_once(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-REPEAT")
    payload = {"clickid": " CLID-REPEAT ", "conversion_id": "ext-1", "payout": "12.50"}

    acks = [await processor.handle_postback(payload) for _ in range(5)]

    assert [ack.duplicate for ack in acks] == [False, True, True, True, True]
    async with session_factory() as session:
        approved = (
            await session.execute(
                select(func.count(Conversion.id)).where(Conversion.status == ConversionStatus.APPROVED)
            )
        ).scalar_one()
        credits = (
            await session.execute(
                select(func.count(BalanceLedger.id)).where(BalanceLedger.type == LedgerEntryType.CREDIT)
            )
        ).scalar_one()
    assert approved == 1
    assert credits == 1
    assert await _wallet(session_factory, user.id) == Decimal("12.50")


@pytest.mark.asyncio
async def test_rejected_postbacks_dedupe_on_external_id(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-REJECT")
    payload = {"click_id": "CLID-REJECT", "conversion_id": "r-1", "payout": "4", "status": "0"}

    first = await processor.handle_postback(payload)
    second = await processor.handle_postback(payload)

    assert first.success and first.matched and not first.duplicate
    assert second.duplicate and second.reason == "external_conversion_id"
    async with session_factory() as session:
        click = await ClickService(session).find_by_click_id("CLID-REJECT")
        assert click.converted is False
        conversion = await session.get(Conversion, first.conversion_record_id)
        assert conversion.status == ConversionStatus.REJECTED
        assert conversion.user_id == user.id
    assert await _wallet(session_factory, user.id) == Decimal("0")


@pytest.mark.asyncio
async def test_approval_after_rejection_is_credited(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-LATER1")

    await processor.handle_postback({"click_id": "CLID-LATER1", "conversion_id": "a", "status": "rejected"})
    ack = await processor.handle_postback({"click_id": "CLID-LATER1", "conversion_id": "b", "payout": "6"})

    assert ack.success and not ack.duplicate
    assert await _wallet(session_factory, user.id) == Decimal("6")


@pytest.mark.asyncio
async def test_unresolved_postback_is_stored_without_money(processor, session_factory, make_user):
    user = await make_user()

    ack = await processor.handle_postback(
        {"click_id": "who-knows", "payout": "25", "offer_id": "missing", "publisher_id": str(user.id)},
        metadata={"client_ip": "203.0.113.9", "headers": {"user-agent": "partner-bot/1.0"}},
    )

    assert ack.success is True
    assert ack.matched is False
    async with session_factory() as session:
        conversion = await session.get(Conversion, ack.conversion_record_id)
        assert conversion.user_id is None
        assert conversion.offer_id is None
        assert conversion.match_tier is None
        assert conversion.ip_address == "203.0.113.9"
        assert conversion.user_agent == "partner-bot/1.0"
        assert conversion.raw_payload["params"]["click_id"] == "who-knows"
        assert conversion.raw_payload["request"]["client_ip"] == "203.0.113.9"
        total = (await session.execute(select(func.coalesce(func.sum(User.wallet), 0)))).scalar_one()
    assert Decimal(total) == Decimal("0")


@pytest.mark.asyncio
async def test_missing_click_id_is_ignored(processor, session_factory):
    ack = await processor.handle_postback({"payout": "3", "status": "1", "click_id": "   "})

    assert ack.success is False
    assert ack.reason == "missing_click_id"
    assert ack.received_params == ["click_id", "payout", "status"]
    async with session_factory() as session:
        assert (await session.execute(select(func.count(Conversion.id)))).scalar_one() == 0


@pytest.mark.asyncio
async def test_concurrent_duplicate_is_caught_by_the_unique_index(
    processor, session_factory, make_user, make_offer, make_click, monkeypatch
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-RACE01")
    payload = {"click_id": "CLID-RACE01", "payout": "9"}
    winner = await processor.handle_postback(payload)

    # the loser passes the lookup as if the winner had not committed yet
    real_lookup = processor._find_duplicate
    calls = []

    async def stale_lookup(session, parsed):
        calls.append(parsed.click_id)
        if len(calls) == 1:
            return None
        return await real_lookup(session, parsed)

    monkeypatch.setattr(processor, "_find_duplicate", stale_lookup)
    loser = await processor.handle_postback(payload)

    assert loser.success is True
    assert loser.duplicate is True
    assert loser.reason == "concurrent_duplicate"
    assert loser.conversion_record_id == winner.conversion_record_id
    assert await _wallet(session_factory, user.id) == Decimal("9")


@pytest.mark.asyncio
async def test_already_converted_click_is_not_paid_again(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-TWICE1")

    await processor.handle_postback({"click_id": "CLID-TWICE1", "payout": "10"})
    ack = await processor.handle_postback({"click_id": "net-CLID-TWICE1", "payout": "10"})

    assert ack.success and ack.matched and not ack.duplicate
    async with session_factory() as session:
        conversion = await session.get(Conversion, ack.conversion_record_id)
        assert conversion.wallet_credited is False
    assert await _wallet(session_factory, user.id) == Decimal("10")


@pytest.mark.asyncio
async def test_approval_moves_claim_and_rewards_referrer(
    processor, session_factory, make_user, make_offer, make_click, make_claim
):
    referrer = await make_user()
    user = await make_user(referral_code=referrer.referral_code)
    offer = await make_offer()
    claim = await make_claim(user, offer)
    await make_click(user, offer, click_id="CLID-CLAIM1")

    await processor.handle_postback({"click_id": "CLID-CLAIM1", "payout": "20"})

    async with session_factory() as session:
        stored = await session.get(OfferClaim, claim.id)
        assert stored.status == ClaimStatus.APPROVED
    assert await _wallet(session_factory, user.id) == Decimal("20")
    assert await _wallet(session_factory, referrer.id) == Decimal("5")


@pytest.mark.asyncio
async def test_storage_failure_is_acknowledged(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    processor = PostbackProcessor(async_sessionmaker(engine, expire_on_commit=False))

    ack = await processor.handle_postback({"click_id": "CLID-DOWN", "payout": "1"})

    assert ack.success is False
    assert ack.reason == "storage_unavailable"
    await engine.dispose()


@pytest.mark.asyncio
async def test_negative_payout_does_not_take_the_approved_slot(
    processor, session_factory, make_user, make_offer, make_click
):
    user = await make_user()
    offer = await make_offer()
    await make_click(user, offer, click_id="CLID-NEG001")

    negative = await processor.handle_postback({"click_id": "CLID-NEG001", "payout": "-5"})
    real = await processor.handle_postback({"click_id": "CLID-NEG001", "payout": "10"})

    assert negative.success is False
    assert negative.reason == "malformed_payload"
    assert real.success is True
    assert not real.duplicate
    async with session_factory() as session:
        click = await ClickService(session).find_by_click_id("CLID-NEG001")
        assert click.converted is True
        assert click.conversion_value == Decimal("10")
        assert (await session.execute(select(func.count(Conversion.id)))).scalar_one() == 1
    assert await _wallet(session_factory, user.id) == Decimal("10")
