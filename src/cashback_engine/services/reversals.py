"""Operator commands that undo or repair reconciliation state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import ReconciliationConfig
from ..errors import ConversionNotFoundError, StoreUnavailableError
from ..models import AdminAction, Click, Conversion
from ..models.base import utcnow
from .attribution import AttributionMatcher
from .balances import ZERO, LedgerService
from .clicks import ClickService

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 0.2


@dataclass(slots=True)
class ReversalResult:
    conversion_id: int
    click_id: str
    user_id: int | None
    amount: Decimal
    wallet_reversed: bool
    click_unconverted: bool


@dataclass(slots=True)
class SyncReport:
    synced: int = 0
    skipped: int = 0
    errored: int = 0
    last_click_id: int = 0
    interrupted: bool = False
    synced_clicks: list[str] = field(default_factory=list)
    # converted from a conversion that credited nobody; settle by hand
    unpaid_clicks: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class ReversalCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ReconciliationConfig | None = None,
        *,
        actor: str = "operator",
    ) -> None:
        self.session_factory = session_factory
        self.config = config or ReconciliationConfig()
        self.actor = actor

    async def reverse_payout(self, conversion_pk: int, *, reason: str | None = None) -> ReversalResult:
        """Delete a conversion and undo everything it caused.

        The wallet debit, the click rollback and the delete commit together.
        Lock or busy errors retry the whole unit so tracking and money never
        disagree.
        """

        attempts = self.config.ledger_retry_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._reverse_once(conversion_pk, reason)
            except OperationalError as exc:
                if attempt == attempts:
                    logger.exception("Reversal of conversion %s failed after %s attempts", conversion_pk, attempt)
                    raise StoreUnavailableError(
                        f"Could not reverse conversion {conversion_pk}"
                    ) from exc
                logger.warning(
                    "Reversal of conversion %s hit %s, retrying (%s/%s)",
                    conversion_pk,
                    exc.__class__.__name__,
                    attempt,
                    attempts,
                )
                await asyncio.sleep(RETRY_DELAY_SECONDS * attempt)

    async def _reverse_once(self, conversion_pk: int, reason: str | None) -> ReversalResult:
        async with self.session_factory() as session:
            async with session.begin():
                conversion = await session.get(Conversion, conversion_pk)
                if conversion is None:
                    raise ConversionNotFoundError(f"Conversion {conversion_pk} not found")

                wallet_reversed = False
                if (
                    conversion.is_approved
                    and conversion.payout > ZERO
                    and conversion.user_id is not None
                    and conversion.wallet_credited
                ):
                    wallet_reversed = await LedgerService(session).reverse(
                        conversion.user_id,
                        conversion.payout,
                        reference_type="conversion",
                        reference_id=str(conversion.id),
                        notes=reason or "conversion_deleted",
                    )

                click_unconverted = False
                click = await self._converted_click(session, conversion)
                if click is not None:
                    await ClickService(session).mark_unconverted(click.id)
                    click_unconverted = True

                result = ReversalResult(
                    conversion_id=conversion.id,
                    click_id=conversion.click_id,
                    user_id=conversion.user_id,
                    amount=conversion.payout,
                    wallet_reversed=wallet_reversed,
                    click_unconverted=click_unconverted,
                )
                await session.delete(conversion)
                session.add(
                    AdminAction(
                        actor=self.actor,
                        action="reverse_payout",
                        target_table="conversions",
                        target_id=str(conversion_pk),
                        delta=-conversion.payout if wallet_reversed else ZERO,
                        reason=reason,
                        details={
                            "click_id": conversion.click_id,
                            "user_id": conversion.user_id,
                            "wallet_reversed": wallet_reversed,
                            "click_unconverted": click_unconverted,
                        },
                    )
                )
        logger.info(
            "Conversion %s reversed (click=%s user=%s amount=%s wallet_reversed=%s)",
            result.conversion_id,
            result.click_id,
            result.user_id,
            result.amount,
            result.wallet_reversed,
        )
        return result

    async def _converted_click(self, session: AsyncSession, conversion: Conversion) -> Click | None:
        """The click this conversion converted, if it is still marked that way."""

        criteria = [func.lower(Click.click_id) == conversion.click_key]
        if conversion.matched_click_id is not None:
            criteria.append(Click.id == conversion.matched_click_id)
        stmt = select(Click).where(
            or_(*criteria),
            Click.converted.is_(True),
            Click.conversion_id == conversion.reference,
        )
        return (await session.execute(stmt.limit(1))).scalar_one_or_none()

    async def delete_click(self, click_pk: int, *, reason: str | None = None) -> str:
        """Delete an unreferenced click; returns its click id."""

        async with self.session_factory() as session:
            async with session.begin():
                click = await ClickService(session).delete_click(click_pk)
                click_id = click.click_id
                session.add(
                    AdminAction(
                        actor=self.actor,
                        action="delete_click",
                        target_table="clicks",
                        target_id=str(click_pk),
                        reason=reason,
                        details={"click_id": click_id, "user_id": click.user_id, "offer_id": click.offer_id},
                    )
                )
        return click_id

    async def resync(
        self,
        *,
        should_stop: Callable[[], bool] | None = None,
        start_after: int = 0,
        batch_size: int | None = None,
    ) -> SyncReport:
        """Convert clicks whose approved conversion never got applied.

        Walks unconverted clicks in id order, one short transaction per
        click. Safe to rerun from 0 or resume from ``last_click_id``.
        Wallets are not touched here.
        """

        batch_size = batch_size or self.config.resync_batch_size
        report = SyncReport(last_click_id=start_after)
        logger.info("Resync started after click %s (batch=%s)", start_after, batch_size)

        cursor = start_after
        while not report.interrupted:
            async with self.session_factory() as session:
                stmt = (
                    select(Click.id)
                    .where(Click.converted.is_(False), Click.id > cursor)
                    .order_by(Click.id.asc())
                    .limit(batch_size)
                )
                batch = list((await session.execute(stmt)).scalars())
            if not batch:
                break
            for click_pk in batch:
                if should_stop is not None and should_stop():
                    report.interrupted = True
                    break
                try:
                    synced = await self._sync_click(click_pk)
                except (SQLAlchemyError, OSError):
                    logger.exception("Resync failed for click %s", click_pk)
                    report.errored += 1
                else:
                    if synced:
                        click_id, paid = synced
                        report.synced += 1
                        report.synced_clicks.append(click_id)
                        if not paid:
                            report.unpaid_clicks.append(click_id)
                    else:
                        report.skipped += 1
                report.last_click_id = cursor = click_pk

        await self._record_resync(report, start_after)
        logger.info(
            "Resync %s: synced=%s unpaid=%s skipped=%s errored=%s last_click_id=%s",
            "interrupted" if report.interrupted else "finished",
            report.synced,
            len(report.unpaid_clicks),
            report.skipped,
            report.errored,
            report.last_click_id,
        )
        return report

    async def _sync_click(self, click_pk: int) -> tuple[str, bool] | None:
        """Returns the click id and whether its conversion credited a wallet."""

        async with self.session_factory() as session:
            async with session.begin():
                click = await session.get(Click, click_pk)
                if click is None or click.converted:
                    return None
                conversion = await AttributionMatcher(session, self.config).find_approved_conversion(click)
                if conversion is None:
                    return None
                await ClickService(session).mark_converted(
                    click.id,
                    conversion_id=conversion.reference,
                    value=conversion.payout,
                    at=utcnow(),
                )
                if conversion.matched_click_id is None:
                    conversion.matched_click_id = click.id
                logger.info(
                    "Resync converted click %s from conversion %s (payout %s)",
                    click.click_id,
                    conversion.id,
                    conversion.payout,
                )
                if not conversion.wallet_credited:
                    logger.warning(
                        "Click %s (user %s) converted from conversion %s, which credited no wallet;"
                        " settle manually",
                        click.click_id,
                        click.user_id,
                        conversion.id,
                    )
                return click.click_id, conversion.wallet_credited

    async def _record_resync(self, report: SyncReport, start_after: int) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(
                        AdminAction(
                            actor=self.actor,
                            action="resync",
                            target_table="clicks",
                            target_id=f"{start_after}-{report.last_click_id}",
                            details={
                                "synced": report.synced,
                                "unpaid_clicks": report.unpaid_clicks,
                                "skipped": report.skipped,
                                "errored": report.errored,
                                "interrupted": report.interrupted,
                            },
                        )
                    )
        except SQLAlchemyError:
            logger.exception("Could not record resync run")


__all__ = ["ReversalCoordinator", "ReversalResult", "SyncReport"]
