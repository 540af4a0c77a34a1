"""Partner postback payloads.

Partners send the same fields under several spellings (``click_id`` or
``clickid``, ``ip`` or ``ip_address``...) and with loosely typed values.
``PostbackPayload`` accepts all of them and normalizes to one shape.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..models import ConversionStatus

logger = logging.getLogger(__name__)

APPROVED_VALUES = {"1", "approved", "approve", "true", "yes", "confirmed", "success"}
REJECTED_VALUES = {"0", "rejected", "reject", "false", "no", "declined", "failed"}


def coerce_status(value: Any) -> ConversionStatus:
    """Map the partner's status flag onto approved/rejected.

    A missing flag means approved. Unrecognised values are treated as
    rejected so they never move money.
    """

    if value is None or (isinstance(value, str) and not value.strip()):
        return ConversionStatus.APPROVED
    if isinstance(value, ConversionStatus):
        return value
    if isinstance(value, bool):
        return ConversionStatus.APPROVED if value else ConversionStatus.REJECTED
    normalized = str(value).strip().lower()
    if normalized in APPROVED_VALUES:
        return ConversionStatus.APPROVED
    if normalized in REJECTED_VALUES:
        return ConversionStatus.REJECTED
    logger.warning("Unrecognised postback status %r, treating as rejected", value)
    return ConversionStatus.REJECTED


class PostbackPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    click_id: str | None = Field(default=None, validation_alias=AliasChoices("click_id", "clickid"))
    external_conversion_id: str | None = Field(
        default=None, validation_alias=AliasChoices("conversion_id", "conversionid")
    )
    payout: Decimal = Decimal("0")
    status: ConversionStatus = ConversionStatus.APPROVED
    partner_offer_id: str | None = Field(default=None, validation_alias=AliasChoices("offer_id", "offerid"))
    publisher_id: str | None = Field(
        default=None, validation_alias=AliasChoices("publisher_id", "publisherid")
    )
    advertiser_id: str | None = Field(
        default=None, validation_alias=AliasChoices("advertiser_id", "advertiserid")
    )
    conversion_type: str | None = Field(
        default=None, validation_alias=AliasChoices("conversion_type", "conversiontype")
    )
    ip_address: str | None = Field(default=None, validation_alias=AliasChoices("ip", "ip_address"))
    user_agent: str | None = Field(default=None, validation_alias=AliasChoices("user_agent", "useragent"))
    referrer: str | None = None

    @field_validator(
        "click_id",
        "external_conversion_id",
        "partner_offer_id",
        "publisher_id",
        "advertiser_id",
        "conversion_type",
        "ip_address",
        "user_agent",
        "referrer",
        mode="before",
    )
    @classmethod
    def _strip(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("payout", mode="before")
    @classmethod
    def _coerce_payout(cls, value: Any) -> Decimal:
        if value is None or (isinstance(value, str) and not value.strip()):
            return Decimal("0")
        try:
            amount = Decimal(str(value).strip())
            if not amount.is_finite():
                raise InvalidOperation(value)
        except InvalidOperation:
            logger.warning("Invalid payout amount %r, using 0", value)
            return Decimal("0")
        if amount < 0:
            # accepting it would take the click's single approved slot
            raise ValueError(f"negative payout {value!r}")
        return amount.quantize(Decimal("0.01"))

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> ConversionStatus:
        return coerce_status(value)

    @property
    def approved(self) -> bool:
        return self.status == ConversionStatus.APPROVED


class PostbackAck(BaseModel):
    """Body returned to the partner. The HTTP status is always 200."""

    success: bool
    message: str
    conversion_record_id: int | None = None
    click_id: str | None = None
    duplicate: bool | None = None
    matched: bool | None = None
    reason: str | None = None
    received_params: list[str] | None = None


__all__ = ["PostbackPayload", "PostbackAck", "coerce_status"]
