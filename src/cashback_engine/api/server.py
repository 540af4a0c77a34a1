"""FastAPI application: click redirects, the partner postback webhook and operator commands."""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..db import _engine, get_session_factory
from ..errors import (
    ClaimNotFoundError,
    ClickInUseError,
    ClickNotFoundError,
    ConversionNotFoundError,
    StoreUnavailableError,
)
from ..models import Base, Offer, User
from ..schemas import ClaimStatusUpdate, PostbackAck
from ..services.attribution import new_offer_cache
from ..services.claims import ClaimService
from ..services.clicks import ClickContext, ClickService, build_redirect_url
from ..services.conversions import PostbackProcessor
from ..services.identifiers import generate_click_id
from ..services.reversals import ReversalCoordinator

logger = logging.getLogger(__name__)

app = FastAPI(title="Cashback Engine API")

_offer_cache = new_offer_cache(settings.reconciliation)


@app.on_event("startup")
async def startup() -> None:
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_postback_processor(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PostbackProcessor:
    return PostbackProcessor(session_factory, settings.reconciliation, offer_cache=_offer_cache)


def get_reversal_coordinator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ReversalCoordinator:
    return ReversalCoordinator(session_factory, settings.reconciliation, actor="admin_api")


async def require_admin(x_admin_secret: str | None = Header(default=None)) -> None:
    expected = settings.admin_secret.get_secret_value()
    if not x_admin_secret or not secrets.compare_digest(x_admin_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid secret")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/offers/{offer_id}/go")
async def go_to_offer(
    offer_id: int,
    request: Request,
    user_id: int = Query(...),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        offer = await session.get(Offer, offer_id)
        if offer is None or not offer.is_active:
            raise HTTPException(status_code=404, detail="Offer not found")
        if await session.get(User, user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        offer_link = offer.offer_link
        partner_offer_id = offer.partner_offer_id

    click_id = generate_click_id()
    context = ClickContext(
        partner_offer_id=partner_offer_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
    )
    try:
        async with session_factory() as session:
            async with session.begin():
                click = await ClickService(session).record_click(
                    user_id=user_id, offer_id=offer_id, context=context, click_id=click_id
                )
                click_id = click.click_id
    except (StoreUnavailableError, SQLAlchemyError):
        # the user still reaches the partner; the postback lands as unresolved
        logger.exception("Click for user %s on offer %s not recorded", user_id, offer_id)
    return RedirectResponse(build_redirect_url(offer_link, click_id), status_code=307)


async def _extract_payload(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "GET":
        return params
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            body = {}
        if isinstance(body, dict):
            params.update(body)
        return params
    form = await request.form()
    params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


def _request_metadata(request: Request) -> dict[str, Any]:
    return {
        "method": request.method,
        "client_ip": request.client.host if request.client else None,
        "headers": {
            name: request.headers[name]
            for name in ("user-agent", "referer", "x-forwarded-for")
            if name in request.headers
        },
    }


@app.api_route("/postback", methods=["GET", "POST"], response_model=PostbackAck)
async def postback(
    request: Request,
    processor: PostbackProcessor = Depends(get_postback_processor),
) -> PostbackAck:
    try:
        payload = await _extract_payload(request)
        return await processor.handle_postback(payload, metadata=_request_metadata(request))
    except Exception:
        # partners retry anything but 200
        logger.exception("Unhandled error while processing postback")
        return PostbackAck(
            success=False,
            message="Postback received but processing failed",
            reason="internal_error",
        )


@app.get("/postback/health")
async def postback_health() -> dict[str, str]:
    return {"status": "ok", "endpoint": "/postback"}


@app.put("/admin/claims/{claim_id}/status", dependencies=[Depends(require_admin)])
async def update_claim_status(
    claim_id: int,
    body: ClaimStatusUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        async with session.begin():
            try:
                claim, rewarded = await ClaimService(session, settings.reconciliation).set_status(
                    claim_id, body.status
                )
            except ClaimNotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            status = claim.status
    return {"id": claim_id, "status": status.value, "referral_rewarded": rewarded}


@app.delete("/admin/conversions/{conversion_id}", dependencies=[Depends(require_admin)])
async def delete_conversion(
    conversion_id: int,
    reason: str | None = Query(default=None),
    coordinator: ReversalCoordinator = Depends(get_reversal_coordinator),
):
    try:
        result = await coordinator.reverse_payout(conversion_id, reason=reason)
    except ConversionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "id": result.conversion_id,
        "click_id": result.click_id,
        "wallet_reversed": result.wallet_reversed,
        "amount": str(result.amount),
        "click_unconverted": result.click_unconverted,
    }


@app.delete("/admin/clicks/{click_pk}", dependencies=[Depends(require_admin)])
async def delete_click(
    click_pk: int,
    reason: str | None = Query(default=None),
    coordinator: ReversalCoordinator = Depends(get_reversal_coordinator),
):
    try:
        click_id = await coordinator.delete_click(click_pk, reason=reason)
    except ClickNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ClickInUseError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"id": click_pk, "click_id": click_id, "deleted": True}


@app.post("/admin/resync", dependencies=[Depends(require_admin)])
async def resync_clicks(
    start_after: int = Query(default=0, ge=0),
    batch_size: int | None = Query(default=None, ge=1),
    coordinator: ReversalCoordinator = Depends(get_reversal_coordinator),
):
    report = await coordinator.resync(start_after=start_after, batch_size=batch_size)
    return report.as_dict()


__all__ = ["app"]
