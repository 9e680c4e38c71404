# Services module

from stockrecon.services.unit_conversion import (
    UnitConversionService,
    UnitFamily,
    Quantity,
    InventoryImpact,
    PurchaseDeduction,
    PortionYield,
    normalize_unit,
    unit_family,
)
from stockrecon.services.variance import (
    VarianceClassifier,
    VarianceThresholds,
    classify,
    compute_variance,
)
from stockrecon.services.counting import (
    CountingSessionManager,
    CountingSession,
    CountingItem,
    SortField,
    begin_edit,
    apply_count,
    abandon_edit,
    merge_refresh,
    calculate_summary,
    filter_items,
    sort_items,
    find_item_by_code,
    parse_count_input,
)
from stockrecon.services.usage_variance import UsageVarianceAnalyzer
from stockrecon.services.variance_history import VarianceHistoryService

__all__ = [
    "UnitConversionService",
    "UnitFamily",
    "Quantity",
    "InventoryImpact",
    "PurchaseDeduction",
    "PortionYield",
    "normalize_unit",
    "unit_family",
    "VarianceClassifier",
    "VarianceThresholds",
    "classify",
    "compute_variance",
    "CountingSessionManager",
    "CountingSession",
    "CountingItem",
    "SortField",
    "begin_edit",
    "apply_count",
    "abandon_edit",
    "merge_refresh",
    "calculate_summary",
    "filter_items",
    "sort_items",
    "find_item_by_code",
    "parse_count_input",
    "UsageVarianceAnalyzer",
    "VarianceHistoryService",
]
