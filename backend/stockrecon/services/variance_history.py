"""Variance history over completed count sessions."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from stockrecon.core.config import settings
from stockrecon.models.reconciliation import SessionStatus
from stockrecon.schemas.variance import (
    UNCATEGORIZED,
    CategoryOffender,
    CategoryVariance,
    HistorySummary,
    InsightType,
    ProductVarianceHistory,
    TrendDirection,
    VarianceHistory,
    VarianceHistoryEntry,
    VarianceInsight,
    VarianceTrend,
)
from stockrecon.services.adapters.base import SessionStore
from stockrecon.services.variance import compute_variance

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TREND_BAND = Decimal("0.2")
TOP_VARIANCE_LIMIT = 20
TOP_OFFENDER_LIMIT = 3
# Average absolute variance above which a worsening product is critical
CRITICAL_AVERAGE_VARIANCE = Decimal("5")
# Category variance value above which the worst category is flagged
CATEGORY_WARNING_VALUE = Decimal("100")


def _as_datetime(value: Union[date, datetime], end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max if end_of_day else time.min)


def _mean(values: List[Decimal]) -> Decimal:
    return sum(values, ZERO) / len(values) if values else ZERO


def variance_trend(history: List[VarianceHistoryEntry]) -> TrendDirection:
    """Compare mean absolute variance of the later half against the earlier half."""
    if len(history) < 2:
        return TrendDirection.STABLE
    midpoint = len(history) // 2
    first = _mean([abs(h.variance) for h in history[:midpoint]])
    second = _mean([abs(h.variance) for h in history[midpoint:]])
    if second < first * (1 - TREND_BAND):
        return TrendDirection.IMPROVING
    if second > first * (1 + TREND_BAND):
        return TrendDirection.WORSENING
    return TrendDirection.STABLE



def category_breakdown(categories: Dict[str, dict]) -> List[CategoryVariance]:
    """Summarize per-category variance rows, highest total value first."""
    breakdown = []
    for category, data in categories.items():
        offenders = sorted(data["offenders"], key=lambda o: -abs(o.variance_value))
        breakdown.append(CategoryVariance(
            category=category,
            items_count=len(data["offenders"]),
            total_variance_value=sum((abs(o.variance_value) for o in data["offenders"]), ZERO),
            avg_variance_percentage=_mean(data["percentages"]),
            top_offenders=offenders[:TOP_OFFENDER_LIMIT],
        ))
    breakdown.sort(key=lambda c: (-c.total_variance_value, c.category.lower()))
    return breakdown


def variance_insights(
    top_variances: List[ProductVarianceHistory],
    categories: List[CategoryVariance],
) -> List[VarianceInsight]:
    """Critical, warning and info findings, in that order."""
    insights = []

    worsening = [
        p for p in top_variances
        if p.average_variance > CRITICAL_AVERAGE_VARIANCE and p.trend == TrendDirection.WORSENING
    ]
    if worsening:
        insights.append(VarianceInsight(
            type=InsightType.CRITICAL,
            title="Worsening Shrinkage Trend",
            description=f"{len(worsening)} products show increasing variance over time",
            affected_items=len(worsening),
            estimated_impact=sum(
                (abs(h.variance_value or ZERO) for p in worsening for h in p.history), ZERO
            ),
            recommendation="Review portion control, storage procedures, and staff training for these items",
        ))

    if categories and categories[0].total_variance_value > CATEGORY_WARNING_VALUE:
        worst = categories[0]
        insights.append(VarianceInsight(
            type=InsightType.WARNING,
            title=f"High Variance in {worst.category}",
            description=f"{worst.category} category shows significant inventory discrepancies",
            affected_items=worst.items_count,
            estimated_impact=worst.total_variance_value,
            recommendation="Audit storage and handling procedures for this category",
        ))

    improving = [p for p in top_variances if p.trend == TrendDirection.IMPROVING]
    if improving:
        insights.append(VarianceInsight(
            type=InsightType.INFO,
            title="Variance Improvement Detected",
            description=f"{len(improving)} products showing better inventory accuracy",
            affected_items=len(improving),
            estimated_impact=ZERO,
            recommendation="Document and replicate successful procedures for other products",
        ))

    return insights

class VarianceHistoryService:
    """Builds the reconciliation report of a restaurant."""

    def __init__(self, store: SessionStore, window_days: Optional[int] = None):
        self.store = store
        self.window_days = window_days or settings.history_window_days

    def build(
        self,
        restaurant_id: int,
        date_from: Optional[Union[date, datetime]] = None,
        date_to: Optional[Union[date, datetime]] = None,
    ) -> VarianceHistory:
        end = _as_datetime(date_to, end_of_day=True) if date_to else datetime.now(timezone.utc)
        start = _as_datetime(date_from) if date_from else end - timedelta(days=self.window_days)

        sessions = self.store.list_sessions(
            restaurant_id,
            status=SessionStatus.COMPLETED,
            started_from=start,
            started_to=end,
        )

        trends: List[VarianceTrend] = []
        products: Dict[int, dict] = {}
        categories: Dict[str, dict] = {}

        for session in sessions:
            counted = session.total_items_counted
            rate = (Decimal(session.items_with_variance) / counted * HUNDRED) if counted else ZERO
            session_date = session.started_at.date()
            trends.append(VarianceTrend(
                session_id=session.id,
                date=session_date,
                counted_items=counted,
                items_with_variance=session.items_with_variance,
                shrinkage_value=abs(session.total_shrinkage_value),
                variance_rate=rate,
            ))

            for item in self.store.list_items(session.id):
                variance, variance_value = compute_variance(
                    item.expected_quantity, item.actual_quantity, item.unit_cost
                )
                if not variance:
                    continue
                category = item.category or UNCATEGORIZED
                entry = products.setdefault(
                    item.product_id,
                    {"product_name": item.product_name, "category": category, "history": []},
                )
                entry["history"].append(VarianceHistoryEntry(
                    session_id=session.id,
                    date=session_date,
                    expected_quantity=item.expected_quantity,
                    actual_quantity=item.actual_quantity,
                    variance=variance,
                    variance_value=variance_value,
                ))

                bucket = categories.setdefault(category, {"offenders": [], "percentages": []})
                bucket["offenders"].append(CategoryOffender(
                    product_name=item.product_name,
                    variance=variance,
                    variance_value=variance_value or ZERO,
                ))
                if item.expected_quantity > 0:
                    bucket["percentages"].append(abs(variance) / item.expected_quantity * HUNDRED)

        top_variances = [
            ProductVarianceHistory(
                product_id=product_id,
                product_name=data["product_name"],
                category=data["category"],
                history=data["history"],
                average_variance=_mean([abs(h.variance) for h in data["history"]]),
                trend=variance_trend(data["history"]),
            )
            for product_id, data in products.items()
        ]
        top_variances.sort(key=lambda p: (-p.average_variance, p.product_name.lower()))
        top_variances = top_variances[:TOP_VARIANCE_LIMIT]
        breakdown = category_breakdown(categories)

        total_shrinkage = sum((t.shrinkage_value for t in trends), ZERO)
        improvement_rate = ZERO
        if len(trends) >= 6:
            recent = _mean([t.variance_rate for t in trends[-3:]])
            previous = _mean([t.variance_rate for t in trends[-6:-3]])
            if previous > 0:
                improvement_rate = (previous - recent) / previous * HUNDRED

        logger.info(
            "Variance history built: restaurant=%s, sessions=%s, products=%s",
            restaurant_id, len(sessions), len(top_variances),
        )
        return VarianceHistory(
            restaurant_id=restaurant_id,
            date_from=start,
            date_to=end,
            trends=trends,
            top_variances=top_variances,
            category_breakdown=breakdown,
            insights=variance_insights(top_variances, breakdown),
            summary=HistorySummary(
                total_sessions=len(sessions),
                total_shrinkage=total_shrinkage,
                average_shrinkage_per_session=(total_shrinkage / len(sessions)) if sessions else ZERO,
                improvement_rate=improvement_rate,
                most_problematic_category=breakdown[0].category if breakdown else None,
            ),
        )
