"""Variance arithmetic and severity classification."""

from decimal import Decimal
from typing import Optional, Tuple

from stockrecon.core.config import settings
from stockrecon.schemas.reconciliation import Severity


class VarianceThresholds:
    """Configuration for severity thresholds."""

    def __init__(
        self,
        caution_value_threshold: Optional[Decimal] = None,
        caution_qty_threshold: Optional[Decimal] = None,
    ):
        self.caution_value_threshold = (
            caution_value_threshold
            if caution_value_threshold is not None
            else settings.caution_value_threshold
        )
        self.caution_qty_threshold = (
            caution_qty_threshold
            if caution_qty_threshold is not None
            else settings.caution_qty_threshold
        )


def compute_variance(
    expected: Decimal,
    actual: Optional[Decimal],
    unit_cost: Optional[Decimal] = None,
) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Return ``(variance, variance_value)``.

    Both are None when *actual* is None. ``variance_value`` is None when the
    unit cost is unknown.
    """
    if actual is None:
        return None, None
    variance = actual - expected
    variance_value = variance * unit_cost if unit_cost is not None else None
    return variance, variance_value


class VarianceClassifier:
    """Maps a variance to a severity tier."""

    def __init__(self, thresholds: Optional[VarianceThresholds] = None):
        self.thresholds = thresholds or VarianceThresholds()

    def classify(
        self,
        variance_qty: Optional[Decimal],
        variance_value: Optional[Decimal] = None,
        unit_cost: Optional[Decimal] = None,
    ) -> Severity:
        """
        Classify a variance.

        Monetary thresholds apply when a positive unit cost is known, quantity
        thresholds otherwise.
        """
        if variance_qty is None:
            return Severity.NOT_COUNTED
        if variance_qty == 0:
            return Severity.OK

        if unit_cost is not None and unit_cost > 0:
            if variance_value is None:
                variance_value = variance_qty * unit_cost
            if abs(variance_value) < self.thresholds.caution_value_threshold:
                return Severity.CAUTION
            return Severity.ALERT

        if abs(variance_qty) < self.thresholds.caution_qty_threshold:
            return Severity.CAUTION
        return Severity.ALERT


_default_classifier = VarianceClassifier()


def classify(
    variance_qty: Optional[Decimal],
    variance_value: Optional[Decimal] = None,
    unit_cost: Optional[Decimal] = None,
) -> Severity:
    """Classify with the configured default thresholds."""
    return _default_classifier.classify(variance_qty, variance_value, unit_cost)
