"""Pydantic schemas for the HTTP surface."""

from .admin import ClaimStatusUpdate
from .postback import PostbackAck, PostbackPayload, coerce_status

__all__ = ["ClaimStatusUpdate", "PostbackAck", "PostbackPayload", "coerce_status"]
