"""SQLAlchemy models exports."""

from .audit import AdminAction
from .base import Base, TimestampMixin
from .finance import BalanceLedger, LedgerEntryType
from .offer import Click, Conversion, ConversionSource, ConversionStatus, Offer
from .user import ClaimStatus, OfferClaim, User

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
    "OfferClaim",
    "ClaimStatus",
    "Offer",
    "Click",
    "Conversion",
    "ConversionStatus",
    "ConversionSource",
    "BalanceLedger",
    "LedgerEntryType",
    "AdminAction",
]
