"""Postback-to-click attribution.

Partners echo our click id back in the postback, but not reliably: some
change its case, some wrap it in their own prefix or cut it short, and some
lose it altogether and only send their offer id and our publisher id. The
matcher tries the lookups below in order of how much they can be trusted
and stops at the first hit:

1. exact click id
2. same click id ignoring case
3. one id contains the other (case-insensitive; the shorter id needs
   ``partial_match_min_length`` characters besides the ``CLID-`` prefix)
4. user/offer already resolved by an earlier postback with the same id
5. partner offer id + publisher id -> that user's latest click on the offer

Every hit is logged with its tier so fuzzy attributions can be audited and,
if wrong, reversed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

from cachetools import TTLCache
from sqlalchemy import String, cast, exists, func, literal, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationConfig
from ..models import Click, Conversion, ConversionStatus, Offer, User
from .identifiers import CLICK_ID_PREFIX

logger = logging.getLogger(__name__)

PREFIX_KEY = CLICK_ID_PREFIX.lower()


class MatchTier(IntEnum):
    EXACT = 1
    CASE_INSENSITIVE = 2
    PARTIAL = 3
    PRIOR_CONVERSION = 4
    PARTNER_HINTS = 5


@dataclass(slots=True)
class AttributionHints:
    partner_offer_id: str | None = None
    publisher_id: str | None = None
    external_conversion_id: str | None = None


@dataclass(slots=True)
class Attribution:
    tier: MatchTier
    user_id: int
    offer_id: int | None
    click: Click | None = None


def click_key(click_id: str) -> str:
    return click_id.strip().lower()


def significant_length(key: str) -> int:
    """Length of a click key not counting our fixed prefix."""

    return len(key) - len(PREFIX_KEY) if key.startswith(PREFIX_KEY) else len(key)


def _sql_significant_length(column):
    return func.length(func.replace(column, PREFIX_KEY, ""))


def new_offer_cache(config: ReconciliationConfig) -> TTLCache[str, int]:
    return TTLCache(maxsize=config.offer_cache_size, ttl=config.offer_cache_ttl)


class AttributionMatcher:
    def __init__(
        self,
        session: AsyncSession,
        config: ReconciliationConfig | None = None,
        *,
        offer_cache: TTLCache[str, int] | None = None,
    ) -> None:
        self.session = session
        self.config = config or ReconciliationConfig()
        self._offer_cache = offer_cache if offer_cache is not None else new_offer_cache(self.config)

    async def resolve(
        self,
        claimed_click_id: str,
        hints: AttributionHints | None = None,
    ) -> Attribution | None:
        claimed = claimed_click_id.strip()
        if not claimed:
            return None
        hints = hints or AttributionHints()
        key = claimed.lower()

        click = await self._first_click(Click.click_id == claimed)
        if click:
            return self._from_click(MatchTier.EXACT, claimed, click)

        click = await self._first_click(func.lower(Click.click_id) == key)
        if click:
            return self._from_click(MatchTier.CASE_INSENSITIVE, claimed, click)

        min_length = self.config.partial_match_min_length
        if significant_length(key) >= min_length:
            lowered = func.lower(Click.click_id)
            click = await self._first_click(
                or_(
                    lowered.contains(key, autoescape=True),
                    (_sql_significant_length(lowered) >= min_length)
                    & literal(key).contains(lowered),
                )
            )
            if click:
                return self._from_click(MatchTier.PARTIAL, claimed, click)

        attribution = await self._from_prior_conversion(claimed, key)
        if attribution:
            return attribution

        attribution = await self._from_hints(claimed, hints)
        if attribution:
            return attribution

        logger.info(
            "No attribution for click id %r (partner_offer_id=%s publisher_id=%s)",
            claimed,
            hints.partner_offer_id,
            hints.publisher_id,
        )
        return None

    async def find_approved_conversion(self, click: Click) -> Conversion | None:
        """Approved conversion that should have converted ``click``, if any.

        Runs tiers 1-3 from the click's side. Conversions already bound to a
        different click, or whose reference is already on a different
        converted click, are ignored.
        """

        key = click_key(click.click_id)
        reference = func.coalesce(Conversion.external_conversion_id, cast(Conversion.id, String))
        taken = exists().where(
            Click.converted.is_(True),
            Click.conversion_id == reference,
            Click.id != click.id,
        )
        base = (
            select(Conversion)
            .where(
                Conversion.status == ConversionStatus.APPROVED,
                or_(Conversion.matched_click_id.is_(None), Conversion.matched_click_id == click.id),
                ~taken,
            )
            .order_by(Conversion.created_at.asc(), Conversion.id.asc())
            .limit(1)
        )
        criteria = [Conversion.click_id == click.click_id, Conversion.click_key == key]
        min_length = self.config.partial_match_min_length
        if significant_length(key) >= min_length:
            criteria.append(
                or_(
                    Conversion.click_key.contains(key, autoescape=True),
                    (_sql_significant_length(Conversion.click_key) >= min_length)
                    & literal(key).contains(Conversion.click_key),
                )
            )
        for tier, criterion in zip(MatchTier, criteria):
            conversion = (await self.session.execute(base.where(criterion))).scalar_one_or_none()
            if conversion:
                logger.debug(
                    "Click %s matches conversion %s at tier %s", click.click_id, conversion.id, tier.name
                )
                return conversion
        return None

    async def _first_click(self, criterion) -> Click | None:
        stmt = (
            select(Click)
            .where(criterion)
            .order_by(Click.created_at.desc(), Click.id.desc())
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _latest_click(self, user_id: int, offer_id: int) -> Click | None:
        return await self._first_click((Click.user_id == user_id) & (Click.offer_id == offer_id))

    def _from_click(self, tier: MatchTier, claimed: str, click: Click) -> Attribution:
        log = logger.info if tier >= MatchTier.PARTIAL else logger.debug
        log("Click id %r matched %s at tier %s", claimed, click.click_id, tier.name)
        return Attribution(tier=tier, user_id=click.user_id, offer_id=click.offer_id, click=click)

    async def _from_prior_conversion(self, claimed: str, key: str) -> Attribution | None:
        stmt = (
            select(Conversion)
            .where(Conversion.click_key == key, Conversion.user_id.is_not(None))
            .order_by(Conversion.created_at.desc(), Conversion.id.desc())
            .limit(1)
        )
        prior = (await self.session.execute(stmt)).scalar_one_or_none()
        if prior is None:
            return None
        click = None
        if prior.matched_click_id is not None:
            click = await self.session.get(Click, prior.matched_click_id)
        if click is None and prior.offer_id is not None:
            click = await self._latest_click(prior.user_id, prior.offer_id)
        logger.info(
            "Click id %r attributed from prior conversion %s (user=%s offer=%s click=%s)",
            claimed,
            prior.id,
            prior.user_id,
            prior.offer_id,
            click.click_id if click else None,
        )
        return Attribution(
            tier=MatchTier.PRIOR_CONVERSION,
            user_id=prior.user_id,
            offer_id=prior.offer_id,
            click=click,
        )

    async def _from_hints(self, claimed: str, hints: AttributionHints) -> Attribution | None:
        offer_pk = await self._offer_for_partner_id(hints.partner_offer_id)
        user_pk = await self._user_for_publisher_id(hints.publisher_id)
        if offer_pk is None or user_pk is None:
            return None
        click = await self._latest_click(user_pk, offer_pk)
        if click is None:
            return None
        logger.info(
            "Click id %r attributed from partner hints to %s (user=%s offer=%s)",
            claimed,
            click.click_id,
            user_pk,
            offer_pk,
        )
        return Attribution(
            tier=MatchTier.PARTNER_HINTS,
            user_id=click.user_id,
            offer_id=click.offer_id,
            click=click,
        )

    async def _offer_for_partner_id(self, partner_offer_id: str | None) -> int | None:
        if not partner_offer_id:
            return None
        cached = self._offer_cache.get(partner_offer_id)
        if cached is not None:
            return cached
        stmt = (
            select(Offer.id)
            .where(Offer.partner_offer_id == partner_offer_id)
            .order_by(Offer.id)
            .limit(1)
        )
        offer_pk = (await self.session.execute(stmt)).scalar_one_or_none()
        if offer_pk is not None:
            self._offer_cache[partner_offer_id] = offer_pk
        return offer_pk

    async def _user_for_publisher_id(self, publisher_id: str | None) -> int | None:
        if not publisher_id or not publisher_id.strip().isdigit():
            return None
        stmt = select(User.id).where(User.id == int(publisher_id.strip()))
        return (await self.session.execute(stmt)).scalar_one_or_none()


__all__ = [
    "AttributionMatcher",
    "Attribution",
    "AttributionHints",
    "MatchTier",
    "click_key",
    "new_offer_cache",
]
