"""Exceptions raised by the costing and reconciliation engine."""

from typing import Optional


class StockReconError(Exception):
    """Base class for all engine errors."""


# ===== UNIT CONVERSION =====

class ConversionError(StockReconError):
    """Raised when a quantity cannot be expressed in the requested unit.

    Conversion errors are recoverable: callers fall back to raw purchase-unit
    math and mark the result as approximate.
    """

    def __init__(self, from_unit: str, to_unit: str, product_name: str = "", detail: str = ""):
        self.from_unit = from_unit
        self.to_unit = to_unit
        self.product_name = product_name
        message = detail or f"Cannot convert '{from_unit}' to '{to_unit}'"
        if product_name:
            message = f"{message} for product '{product_name}'"
        super().__init__(message)


class UnknownUnit(ConversionError):
    """Raised when a unit is not part of any known unit family."""

    def __init__(self, unit: str, from_unit: str, to_unit: str, product_name: str = ""):
        self.unit = unit
        super().__init__(from_unit, to_unit, product_name, detail=f"Unknown unit '{unit}'")


class IncompatibleUnits(ConversionError):
    """Raised when converting across unit families without a product override."""


class MissingPackageInfo(ConversionError):
    """Raised when package math is needed but the product has no package size."""

    def __init__(self, from_unit: str, to_unit: str, product_name: str = ""):
        super().__init__(
            from_unit,
            to_unit,
            product_name,
            detail=f"No package size to express '{from_unit}' as a share of '{to_unit}'",
        )


# ===== COUNTING SESSIONS =====

class CountingError(StockReconError):
    """Base class for count workflow errors."""


class SessionAlreadyActive(CountingError):
    """Raised when a restaurant already has a counting session."""

    def __init__(self, restaurant_id: int, existing_session_id: Optional[int] = None):
        self.restaurant_id = restaurant_id
        self.existing_session_id = existing_session_id
        super().__init__(
            f"Restaurant {restaurant_id} already has an active count session"
            + (f" ({existing_session_id})" if existing_session_id is not None else "")
        )


class SessionNotFound(CountingError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionNotActive(CountingError):
    """Raised when a completed or cancelled session would be mutated."""

    def __init__(self, session_id: int, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {status}; counts can no longer change")


class ItemNotFound(CountingError):
    def __init__(self, item_id: int, session_id: Optional[int] = None):
        self.item_id = item_id
        self.session_id = session_id
        super().__init__(f"Item {item_id} is not part of session {session_id}")


class FindNotFound(CountingError):
    def __init__(self, find_id: int):
        self.find_id = find_id
        super().__init__(f"Find {find_id} not found")


class InvalidCountInput(CountingError):
    """Raised when a count entry is not a number."""

    def __init__(self, raw_input: str):
        self.raw_input = raw_input
        super().__init__(f"Count must be a number, got {raw_input!r}")


class NothingCounted(CountingError):
    """Raised when completing a session in which no item was counted."""

    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} has no counted items")


class CancelNotConfirmed(CountingError):
    """Raised when cancelling would discard counts and the caller did not confirm."""

    def __init__(self, session_id: int, counted_items: int):
        self.session_id = session_id
        self.counted_items = counted_items
        super().__init__(
            f"Session {session_id} has {counted_items} counted item(s); confirm to discard them"
        )


class CountCommitError(CountingError):
    """Raised when storage failed to persist one item's count."""

    def __init__(self, item_id: int, reason: str = ""):
        self.item_id = item_id
        super().__init__(f"Could not save count for item {item_id}" + (f": {reason}" if reason else ""))
