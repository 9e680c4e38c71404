"""Schemas for usage variance findings and variance history."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from stockrecon.schemas.reconciliation import Severity

UNCATEGORIZED = "Uncategorized"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


class InsightType(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


# ============== Usage Variance ==============

class VarianceFinding(BaseModel):
    """Theoretical vs actual usage of one product over a window."""
    product_id: int
    product_name: str
    unit: Optional[str] = None
    theoretical_usage: Decimal
    actual_usage: Decimal
    variance: Decimal
    variance_percentage: Decimal
    unit_cost: Optional[Decimal] = None
    cost_impact: Decimal = Decimal("0")
    is_significant: bool = False
    severity: Severity = Severity.OK
    approximate: bool = False


class VarianceReport(BaseModel):
    """Usage variance for one restaurant over a date window."""
    restaurant_id: int
    date_from: date
    date_to: date
    total_cost_impact: Decimal = Decimal("0")
    significant_count: int = 0
    unmapped_items: List[str] = Field(default_factory=list)
    findings: List[VarianceFinding] = Field(default_factory=list)


# ============== Variance History ==============

class VarianceTrend(BaseModel):
    """Count results of one completed session."""
    session_id: int
    date: date
    counted_items: int
    items_with_variance: int
    shrinkage_value: Decimal
    variance_rate: Decimal


class VarianceHistoryEntry(BaseModel):
    session_id: int
    date: date
    expected_quantity: Decimal
    actual_quantity: Decimal
    variance: Decimal
    variance_value: Optional[Decimal] = None


class ProductVarianceHistory(BaseModel):
    """Non-zero variances of one product across sessions."""
    product_id: int
    product_name: str
    category: str = UNCATEGORIZED
    history: List[VarianceHistoryEntry] = Field(default_factory=list)
    average_variance: Decimal = Decimal("0")
    trend: TrendDirection = TrendDirection.STABLE


class CategoryOffender(BaseModel):
    product_name: str
    variance: Decimal
    variance_value: Decimal = Decimal("0")


class CategoryVariance(BaseModel):
    """Non-zero variances of one product category, largest value first."""
    category: str
    items_count: int = 0
    total_variance_value: Decimal = Decimal("0")
    avg_variance_percentage: Decimal = Decimal("0")
    top_offenders: List[CategoryOffender] = Field(default_factory=list)


class VarianceInsight(BaseModel):
    type: InsightType
    title: str
    description: str
    affected_items: int
    estimated_impact: Decimal = Decimal("0")
    recommendation: str


class HistorySummary(BaseModel):
    total_sessions: int = 0
    total_shrinkage: Decimal = Decimal("0")
    average_shrinkage_per_session: Decimal = Decimal("0")
    improvement_rate: Decimal = Decimal("0")
    most_problematic_category: Optional[str] = None


class VarianceHistory(BaseModel):
    """Reconciliation report over completed sessions."""
    restaurant_id: int
    date_from: datetime
    date_to: datetime
    trends: List[VarianceTrend] = Field(default_factory=list)
    top_variances: List[ProductVarianceHistory] = Field(default_factory=list)
    category_breakdown: List[CategoryVariance] = Field(default_factory=list)
    insights: List[VarianceInsight] = Field(default_factory=list)
    summary: HistorySummary = Field(default_factory=HistorySummary)
