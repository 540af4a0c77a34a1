"""Postback reconciliation.

``PostbackProcessor.handle_postback`` is the webhook entry point. It always
returns an acknowledgment: partners retry anything that is not a success,
so failures are reported in the body and left for resync or an operator.

Exactly-once payout rests on two unique indexes on ``conversions`` (one
approved row per click id; one row per click id + partner conversion id).
The lookups in ``_find_duplicate`` only spare the work; a concurrent
duplicate that slips past them fails at commit and is acknowledged as a
duplicate.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from cachetools import TTLCache
from pydantic import ValidationError
from pydantic_core import to_jsonable_python
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import ReconciliationConfig
from ..models import Conversion, ConversionSource, ConversionStatus
from ..models.base import utcnow
from ..schemas.postback import PostbackAck, PostbackPayload
from .attribution import Attribution, AttributionHints, AttributionMatcher, click_key, new_offer_cache
from .balances import ZERO, LedgerService
from .claims import ClaimService
from .clicks import ClickService
from .identifiers import looks_like_click_id

logger = logging.getLogger(__name__)


class PostbackProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ReconciliationConfig | None = None,
        *,
        offer_cache: TTLCache[str, int] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or ReconciliationConfig()
        self._offer_cache = offer_cache if offer_cache is not None else new_offer_cache(self.config)

    async def handle_postback(
        self,
        raw_payload: Mapping[str, Any],
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> PostbackAck:
        started = time.monotonic()
        received_params = sorted(str(key) for key in raw_payload)
        try:
            payload = PostbackPayload.model_validate(dict(raw_payload))
        except ValidationError as exc:
            logger.warning("Malformed postback ignored: %s (params=%s)", exc, received_params)
            return PostbackAck(
                success=False,
                message="Malformed postback payload",
                reason="malformed_payload",
                received_params=received_params,
            )
        if not payload.click_id:
            logger.warning("Postback ignored, missing click id (params=%s)", received_params)
            return PostbackAck(
                success=False,
                message="Click ID is required",
                reason="missing_click_id",
                received_params=received_params,
            )

        try:
            ack = await self._process(payload, raw_payload, metadata or {})
        except IntegrityError:
            logger.warning(
                "Concurrent duplicate postback for click id %r (conversion_id=%s)",
                payload.click_id,
                payload.external_conversion_id,
            )
            return await self._concurrent_duplicate_ack(payload)
        except (SQLAlchemyError, OSError):
            logger.exception("Postback processing failed for click id %r", payload.click_id)
            return PostbackAck(
                success=False,
                message="Postback received but processing failed",
                reason="storage_unavailable",
                click_id=payload.click_id,
            )
        logger.info(
            "Postback for click id %r handled in %.1fms: %s",
            payload.click_id,
            (time.monotonic() - started) * 1000,
            ack.message,
        )
        return ack

    async def _process(
        self,
        payload: PostbackPayload,
        raw_payload: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> PostbackAck:
        async with self.session_factory() as session:
            async with session.begin():
                duplicate = await self._find_duplicate(session, payload)
                if duplicate:
                    existing, reason = duplicate
                    logger.info(
                        "Duplicate postback for click id %r suppressed (%s, conversion %s)",
                        payload.click_id,
                        reason,
                        existing.id,
                    )
                    return PostbackAck(
                        success=True,
                        message="Conversion already processed (duplicate)",
                        conversion_record_id=existing.id,
                        click_id=payload.click_id,
                        duplicate=True,
                        reason=reason,
                    )

                if not looks_like_click_id(payload.click_id):
                    logger.debug("Click id %r is not in the local format", payload.click_id)
                matcher = AttributionMatcher(session, self.config, offer_cache=self._offer_cache)
                attribution = await matcher.resolve(
                    payload.click_id,
                    AttributionHints(
                        partner_offer_id=payload.partner_offer_id,
                        publisher_id=payload.publisher_id,
                        external_conversion_id=payload.external_conversion_id,
                    ),
                )
                conversion = self._build_conversion(payload, attribution, raw_payload, metadata)
                session.add(conversion)
                await session.flush()

                if attribution is None:
                    logger.warning(
                        "Unresolved postback stored as conversion %s (click id %r, payout %s)",
                        conversion.id,
                        payload.click_id,
                        payload.payout,
                    )
                elif not payload.approved:
                    logger.info(
                        "Rejected postback stored as conversion %s (click id %r, user %s)",
                        conversion.id,
                        payload.click_id,
                        attribution.user_id,
                    )
                else:
                    await self._apply_approval(session, conversion, attribution)
                conversion_pk = conversion.id

        return PostbackAck(
            success=True,
            message="Postback received and processed successfully",
            conversion_record_id=conversion_pk,
            click_id=payload.click_id,
            duplicate=False,
            matched=attribution is not None,
        )

    async def _apply_approval(
        self,
        session: AsyncSession,
        conversion: Conversion,
        attribution: Attribution,
    ) -> None:
        click = attribution.click
        if click is not None and click.converted:
            # another claimed id already converted this click; it is paid once
            logger.warning(
                "Click %s already converted by %s; conversion %s recorded without credit",
                click.click_id,
                click.conversion_id,
                conversion.id,
            )
            return
        if click is not None:
            await ClickService(session).mark_converted(
                click.id,
                conversion_id=conversion.reference,
                value=conversion.payout,
                at=utcnow(),
            )
        if conversion.payout > ZERO:
            conversion.wallet_credited = await LedgerService(session).credit(
                attribution.user_id,
                conversion.payout,
                reference_type="conversion",
                reference_id=str(conversion.id),
                notes="conversion_approved",
            )
        if attribution.offer_id is not None:
            await ClaimService(session, self.config).approve_for_offer(
                attribution.user_id, attribution.offer_id
            )
        await session.flush()

    def _build_conversion(
        self,
        payload: PostbackPayload,
        attribution: Attribution | None,
        raw_payload: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> Conversion:
        click = attribution.click if attribution else None
        headers = metadata.get("headers") or {}
        return Conversion(
            click_id=payload.click_id,
            click_key=click_key(payload.click_id),
            external_conversion_id=payload.external_conversion_id,
            status=payload.status,
            payout=payload.payout,
            conversion_type=payload.conversion_type or self.config.default_conversion_type,
            user_id=attribution.user_id if attribution else None,
            offer_id=attribution.offer_id if attribution else None,
            matched_click_id=click.id if click else None,
            match_tier=int(attribution.tier) if attribution else None,
            partner_offer_id=payload.partner_offer_id or (click.partner_offer_id if click else None),
            publisher_id=payload.publisher_id,
            advertiser_id=payload.advertiser_id,
            ip_address=payload.ip_address or metadata.get("client_ip"),
            user_agent=payload.user_agent or headers.get("user-agent"),
            referrer=payload.referrer or headers.get("referer"),
            raw_payload={
                "params": to_jsonable_python(dict(raw_payload), fallback=str),
                "received_at": utcnow().isoformat(),
                "request": to_jsonable_python(dict(metadata), fallback=str),
            },
            source=ConversionSource.INCOMING,
            wallet_credited=False,
        )

    async def _find_duplicate(
        self,
        session: AsyncSession,
        payload: PostbackPayload,
    ) -> tuple[Conversion, str] | None:
        key = click_key(payload.click_id)
        if payload.approved:
            stmt = (
                select(Conversion)
                .where(Conversion.click_key == key, Conversion.status == ConversionStatus.APPROVED)
                .limit(1)
            )
            existing = (await session.execute(stmt)).scalar_one_or_none()
            if existing:
                return existing, "click_id_unique_constraint"
        if payload.external_conversion_id:
            stmt = (
                select(Conversion)
                .where(
                    Conversion.click_key == key,
                    Conversion.external_conversion_id == payload.external_conversion_id,
                )
                .limit(1)
            )
            existing = (await session.execute(stmt)).scalar_one_or_none()
            if existing:
                return existing, "external_conversion_id"
        return None

    async def _concurrent_duplicate_ack(self, payload: PostbackPayload) -> PostbackAck:
        existing_id = None
        try:
            async with self.session_factory() as session:
                duplicate = await self._find_duplicate(session, payload)
                if duplicate:
                    existing_id = duplicate[0].id
        except SQLAlchemyError:
            logger.exception("Could not look up the conversion that won for %r", payload.click_id)
        return PostbackAck(
            success=True,
            message="Conversion already processed (duplicate)",
            conversion_record_id=existing_id,
            click_id=payload.click_id,
            duplicate=True,
            reason="concurrent_duplicate",
        )


__all__ = ["PostbackProcessor"]
