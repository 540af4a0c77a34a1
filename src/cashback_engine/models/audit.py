"""Operator audit trail."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Numeric, String, Text
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class AdminAction(TimestampMixin, Base):
    __tablename__ = "admin_actions"

    id: Mapped[int] = mapped_column(primary_key=True)
    actor: Mapped[str] = mapped_column(String(64), default="operator")
    action: Mapped[str] = mapped_column(String(64))
    target_table: Mapped[str] = mapped_column(String(64))
    target_id: Mapped[str] = mapped_column(String(64))
    delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSON)


__all__ = ["AdminAction"]
