"""Engine exceptions."""

from __future__ import annotations


class CashbackEngineError(RuntimeError):
    pass


class StoreUnavailableError(CashbackEngineError):
    """Storage could not be reached; the operation may be retried."""


class ConversionNotFoundError(CashbackEngineError, LookupError):
    pass


class ClickNotFoundError(CashbackEngineError, LookupError):
    pass


class ClaimNotFoundError(CashbackEngineError, LookupError):
    pass


class ClickInUseError(CashbackEngineError):
    """Raised when a click still has conversions recorded against it."""

    def __init__(self, click_id: str, conversion_count: int) -> None:
        super().__init__(
            f"Click {click_id} has {conversion_count} conversion(s); reverse them first"
        )
        self.click_id = click_id
        self.conversion_count = conversion_count


__all__ = [
    "CashbackEngineError",
    "StoreUnavailableError",
    "ConversionNotFoundError",
    "ClickNotFoundError",
    "ClaimNotFoundError",
    "ClickInUseError",
]
