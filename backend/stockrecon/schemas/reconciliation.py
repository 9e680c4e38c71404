"""Schemas for count sessions: summary, adjustments and completion."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Severity tier of a count or usage discrepancy."""
    NOT_COUNTED = "not_counted"
    OK = "ok"
    CAUTION = "caution"
    ALERT = "alert"


class CountSummary(BaseModel):
    """Progress of a count session."""
    session_id: Optional[int] = None
    total_items: int = 0
    total_items_counted: int = 0
    items_with_variance: int = 0
    total_variance_value: Decimal = Decimal("0")
    total_shrinkage_value: Decimal = Decimal("0")  # net: shrinkage - overage
    total_overage_value: Decimal = Decimal("0")
    progress_percent: Decimal = Decimal("0")


class CountedItemView(BaseModel):
    """One item as shown on the count sheet."""
    model_config = ConfigDict(from_attributes=True)

    item_id: int
    product_id: int
    product_name: str
    sku: Optional[str] = None
    unit: Optional[str] = None
    expected_quantity: Decimal
    actual_quantity: Optional[Decimal] = None
    display_value: str = ""
    variance: Optional[Decimal] = None
    variance_value: Optional[Decimal] = None
    severity: Severity = Severity.NOT_COUNTED
    pending: bool = False


class StockAdjustment(BaseModel):
    """A counted quantity to write back as new on-hand stock."""
    product_id: int
    product_name: str
    expected_quantity: Decimal
    counted_quantity: Decimal
    delta: Decimal
    unit_cost: Optional[Decimal] = None
    value: Optional[Decimal] = None


class CompletionResult(BaseModel):
    """Outcome of completing a count session."""
    session_id: int
    restaurant_id: int
    submitted_at: datetime
    summary: CountSummary
    adjustments: List[StockAdjustment] = Field(default_factory=list)
