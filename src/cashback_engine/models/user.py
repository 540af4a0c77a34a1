"""User-centric models."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(128), default="")
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    wallet: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_cashback: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    referral_code: Mapped[str] = mapped_column(String(32), unique=True)
    referred_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    referrals_count: Mapped[int] = mapped_column(Integer, default=0)

    referred_by: Mapped["User | None"] = relationship(
        remote_side="User.id", foreign_keys=[referred_by_id]
    )
    claims: Mapped[list["OfferClaim"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class ClaimStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class OfferClaim(TimestampMixin, Base):
    """A user's claim on an offer, moderated by the claim subsystem."""

    __tablename__ = "offer_claims"
    __table_args__ = (UniqueConstraint("user_id", "offer_id", name="uq_offer_claims_user_offer"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    offer_id: Mapped[int] = mapped_column(ForeignKey("offers.id"), index=True)
    status: Mapped[ClaimStatus] = mapped_column(default=ClaimStatus.PENDING)

    user: Mapped[User] = relationship(back_populates="claims")


__all__ = ["User", "OfferClaim", "ClaimStatus"]
