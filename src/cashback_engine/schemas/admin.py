"""Operator command payloads."""

from __future__ import annotations

from pydantic import BaseModel

from ..models import ClaimStatus


class ClaimStatusUpdate(BaseModel):
    status: ClaimStatus


__all__ = ["ClaimStatusUpdate"]
