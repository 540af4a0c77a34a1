"""Click tracking helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ClickInUseError, ClickNotFoundError, StoreUnavailableError
from ..models import Click, Conversion
from .identifiers import generate_click_id

logger = logging.getLogger(__name__)

CLICK_ID_PARAMS = ("click_id", "sub1", "p1")
MAX_ID_ATTEMPTS = 3


@dataclass(slots=True)
class ClickContext:
    partner_offer_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    referrer: str | None = None


def build_redirect_url(offer_link: str, click_id: str) -> str:
    """Append the click id to the partner link under every name partners read."""

    parts = urlsplit(offer_link)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in CLICK_ID_PARAMS]
    query.extend((name, click_id) for name in CLICK_ID_PARAMS)
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClickService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_click(
        self,
        *,
        user_id: int,
        offer_id: int,
        context: ClickContext | None = None,
        click_id: str | None = None,
    ) -> Click:
        """Persist a fresh, unconverted click.

        ``click_id`` may be pre-generated by the caller so the redirect can
        carry it even when this write fails.
        """

        context = context or ClickContext()
        try:
            candidate = click_id or generate_click_id()
            for _ in range(MAX_ID_ATTEMPTS):
                if await self.find_by_click_id(candidate) is None:
                    break
                logger.warning("Click id collision on %s, regenerating", candidate)
                candidate = generate_click_id()
            else:
                raise StoreUnavailableError("Could not allocate a unique click id")
            click = Click(
                user_id=user_id,
                offer_id=offer_id,
                click_id=candidate,
                partner_offer_id=context.partner_offer_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                referrer=context.referrer,
            )
            self.session.add(click)
            await self.session.flush()
        except IntegrityError as exc:
            # a concurrent writer took the id between the check and the insert
            raise StoreUnavailableError(f"Click id {candidate} already taken") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return click

    async def find_by_click_id(self, click_id: str) -> Click | None:
        stmt = select(Click).where(Click.click_id == click_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get(self, click_pk: int) -> Click | None:
        return await self.session.get(Click, click_pk)

    async def mark_converted(
        self,
        click_pk: int,
        *,
        conversion_id: str | None,
        value: Decimal,
        at: datetime,
    ) -> None:
        stmt = (
            update(Click)
            .where(Click.id == click_pk)
            .values(
                converted=True,
                conversion_id=conversion_id,
                conversion_value=max(value, Decimal("0")),
                converted_at=at,
            )
        )
        await self.session.execute(stmt)

    async def mark_unconverted(self, click_pk: int) -> None:
        stmt = (
            update(Click)
            .where(Click.id == click_pk)
            .values(
                converted=False,
                conversion_id=None,
                conversion_value=Decimal("0"),
                converted_at=None,
            )
        )
        await self.session.execute(stmt)

    async def delete_click(self, click_pk: int) -> Click:
        click = await self.get(click_pk)
        if click is None:
            raise ClickNotFoundError(f"Click {click_pk} not found")
        count_stmt = select(func.count(Conversion.id)).where(
            (Conversion.click_key == click.click_id.lower())
            | (Conversion.matched_click_id == click.id)
        )
        conversion_count = (await self.session.execute(count_stmt)).scalar_one()
        if conversion_count:
            raise ClickInUseError(click.click_id, conversion_count)
        await self.session.delete(click)
        await self.session.flush()
        logger.info("Click %s deleted (user=%s offer=%s)", click.click_id, click.user_id, click.offer_id)
        return click


__all__ = ["ClickService", "ClickContext", "build_redirect_url"]
