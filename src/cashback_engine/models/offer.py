"""Offer and tracking models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin


class Offer(TimestampMixin, Base):
    __tablename__ = "offers"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    offer_link: Mapped[str] = mapped_column(Text)
    partner_offer_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    payout: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    clicks: Mapped[list["Click"]] = relationship(back_populates="offer")


class Click(TimestampMixin, Base):
    __tablename__ = "clicks"
    __table_args__ = (Index("ix_clicks_user_offer", "user_id", "offer_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    click_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    offer_id: Mapped[int] = mapped_column(ForeignKey("offers.id"), index=True)
    partner_offer_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    referrer: Mapped[Optional[str]] = mapped_column(Text)
    converted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    conversion_id: Mapped[Optional[str]] = mapped_column(String(128))
    conversion_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    offer: Mapped[Offer] = relationship(back_populates="clicks")


class ConversionStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ConversionSource(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class Conversion(TimestampMixin, Base):
    """Postback record. Rows are written once and only ever deleted by reversal."""

    __tablename__ = "conversions"
    __table_args__ = (
        UniqueConstraint(
            "click_key", "external_conversion_id", name="uq_conversions_click_external"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    click_id: Mapped[str] = mapped_column(String(255), index=True)
    # case-folded click_id; both uniqueness rules key on it
    click_key: Mapped[str] = mapped_column(String(255), index=True)
    external_conversion_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    status: Mapped[ConversionStatus] = mapped_column(default=ConversionStatus.APPROVED)
    payout: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    conversion_type: Mapped[str] = mapped_column(String(32), default="install")
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    offer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("offers.id"), index=True)
    matched_click_id: Mapped[Optional[int]] = mapped_column(ForeignKey("clicks.id"), index=True)
    match_tier: Mapped[Optional[int]] = mapped_column(Integer)
    partner_offer_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    publisher_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    advertiser_id: Mapped[Optional[str]] = mapped_column(String(64))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    referrer: Mapped[Optional[str]] = mapped_column(Text)
    raw_payload: Mapped[dict | None] = mapped_column(JSON)
    source: Mapped[ConversionSource] = mapped_column(default=ConversionSource.INCOMING)
    wallet_credited: Mapped[bool] = mapped_column(Boolean, default=False)

    matched_click: Mapped[Optional[Click]] = relationship(foreign_keys=[matched_click_id])

    @property
    def is_approved(self) -> bool:
        return self.status == ConversionStatus.APPROVED

    @property
    def reference(self) -> str:
        """Identifier written onto the click this conversion converts."""

        return self.external_conversion_id or str(self.id)


# One approved payout per claimed click id.
Index(
    "uq_conversions_approved_click",
    Conversion.click_key,
    unique=True,
    sqlite_where=Conversion.status == ConversionStatus.APPROVED,
    postgresql_where=Conversion.status == ConversionStatus.APPROVED,
)


__all__ = [
    "Offer",
    "Click",
    "Conversion",
    "ConversionStatus",
    "ConversionSource",
]
