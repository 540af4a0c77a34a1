import itertools
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cashback_engine.models import Base, Click, Offer, OfferClaim, User
from cashback_engine.services.clicks import ClickContext, ClickService
from cashback_engine.services.users import UserService


@pytest_asyncio.fixture
async def engine(tmp_path):
    # file database so every session sees the same data
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cashback.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    async def factory(referral_code: str | None = None) -> User:
        n = next(counter)
        async with session_factory() as session:
            async with session.begin():
                return await UserService(session).register(
                    name=f"user{n}", email=f"user{n}@example.com", referral_code=referral_code
                )

    return factory


@pytest.fixture
def make_offer(session_factory):
    counter = itertools.count(1)

    async def factory(partner_offer_id: str | None = None, payout: str = "10") -> Offer:
        n = next(counter)
        async with session_factory() as session:
            async with session.begin():
                offer = Offer(
                    title=f"Offer {n}",
                    offer_link=f"https://partner.example.com/offer/{n}?aff=7",
                    partner_offer_id=partner_offer_id,
                    payout=Decimal(payout),
                )
                session.add(offer)
        return offer

    return factory


@pytest.fixture
def make_click(session_factory):
    async def factory(user: User, offer: Offer, click_id: str | None = None) -> Click:
        async with session_factory() as session:
            async with session.begin():
                return await ClickService(session).record_click(
                    user_id=user.id,
                    offer_id=offer.id,
                    context=ClickContext(partner_offer_id=offer.partner_offer_id),
                    click_id=click_id,
                )

    return factory


@pytest.fixture
def make_claim(session_factory):
    async def factory(user: User, offer: Offer) -> OfferClaim:
        async with session_factory() as session:
            async with session.begin():
                claim = OfferClaim(user_id=user.id, offer_id=offer.id)
                session.add(claim)
        return claim

    return factory
