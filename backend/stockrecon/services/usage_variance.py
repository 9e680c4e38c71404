"""Usage variance: theoretical (recipes x sales) vs actual (ledger) consumption."""

import logging
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Optional, Set, Tuple

from stockrecon.core.config import settings
from stockrecon.schemas.variance import VarianceFinding, VarianceReport
from stockrecon.services.adapters.base import (
    CatalogAdapter,
    LedgerAdapter,
    ProductInfo,
    RecipeCatalogAdapter,
    SalesFeedAdapter,
)
from stockrecon.services.unit_conversion import PurchaseDeduction, UnitConversionService
from stockrecon.services.variance import VarianceClassifier

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class UsageVarianceAnalyzer:
    """Compares what recipes say was used against what the ledger recorded.

    Read-only: repeated runs over the same data give the same report.
    """

    def __init__(
        self,
        catalog: CatalogAdapter,
        recipes: RecipeCatalogAdapter,
        sales: SalesFeedAdapter,
        ledger: LedgerAdapter,
        converter: Optional[UnitConversionService] = None,
        classifier: Optional[VarianceClassifier] = None,
        significant_percent: Optional[Decimal] = None,
        window_days: Optional[int] = None,
        sale_deduction_type: Optional[str] = None,
    ):
        self.catalog = catalog
        self.recipes = recipes
        self.sales = sales
        self.ledger = ledger
        self.converter = converter or UnitConversionService()
        self.classifier = classifier or VarianceClassifier()
        self.significant_percent = (
            significant_percent if significant_percent is not None
            else settings.significant_variance_percent
        )
        self.window_days = window_days or settings.analysis_window_days
        self.sale_deduction_type = sale_deduction_type or settings.sale_deduction_type

    def default_window(self, today: Optional[date] = None) -> Tuple[date, date]:
        today = today or date.today()
        return today - timedelta(days=self.window_days), today

    def analyze(
        self,
        restaurant_id: int,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        today: Optional[date] = None,
    ) -> VarianceReport:
        """
        Build the variance report for a date window (inclusive).

        Defaults to the trailing ``window_days`` ending *today*.
        """
        default_from, default_to = self.default_window(today)
        date_from = date_from or default_from
        date_to = date_to or default_to

        products: Dict[int, Optional[ProductInfo]] = {}

        def product_for(product_id: int) -> Optional[ProductInfo]:
            if product_id not in products:
                products[product_id] = self.catalog.get_product(product_id)
            return products[product_id]

        # Theoretical usage from sales x recipes
        recipes = self.recipes.get_recipes_by_pos_item_name(restaurant_id)
        theoretical: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        approximate: Set[int] = set()
        unmapped: Set[str] = set()
        conversions: Dict[Tuple[int, Decimal, str], PurchaseDeduction] = {}

        for sale in self.sales.get_sales(restaurant_id, date_from, date_to):
            recipe = recipes.get(sale.pos_item_name)
            if recipe is None:
                unmapped.add(sale.pos_item_name)
                continue

            for ingredient in recipe.ingredients:
                key = (ingredient.product_id, ingredient.quantity, ingredient.unit)
                if key not in conversions:
                    product = product_for(ingredient.product_id)
                    if product is None:
                        conversions[key] = PurchaseDeduction(
                            quantity=ingredient.quantity,
                            unit=ingredient.unit,
                            method="fallback_1:1",
                            approximate=True,
                            warning=f"Product {ingredient.product_id} not in catalog",
                        )
                    else:
                        conversions[key] = self.converter.to_purchase_units(
                            ingredient.quantity, ingredient.unit, product
                        )
                deduction = conversions[key]
                theoretical[ingredient.product_id] += deduction.quantity * Decimal(sale.quantity)
                if deduction.approximate:
                    approximate.add(ingredient.product_id)

        # Actual usage and latest unit cost from the ledger
        actual: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        ledger_cost: Dict[int, Decimal] = {}
        for entry in self.ledger.get_transactions(restaurant_id, date_from, date_to):
            if entry.unit_cost is not None:
                ledger_cost[entry.product_id] = entry.unit_cost  # oldest first, so latest wins
            if entry.transaction_type == self.sale_deduction_type:
                actual[entry.product_id] += abs(entry.quantity)

        findings = []
        for product_id in set(theoretical) | set(actual):
            theo = theoretical.get(product_id, ZERO)
            act = actual.get(product_id, ZERO)
            if theo <= 0 and act <= 0:
                continue

            product = product_for(product_id)
            unit_cost = ledger_cost.get(product_id)
            if unit_cost is None and product is not None:
                unit_cost = product.unit_cost

            variance = act - theo
            percentage = (variance / theo * HUNDRED) if theo > 0 else ZERO
            cost_impact = variance * unit_cost if unit_cost is not None else ZERO

            findings.append(VarianceFinding(
                product_id=product_id,
                product_name=product.name if product else f"Product {product_id}",
                unit=product.purchase_unit if product else None,
                theoretical_usage=theo,
                actual_usage=act,
                variance=variance,
                variance_percentage=percentage,
                unit_cost=unit_cost,
                cost_impact=cost_impact,
                is_significant=abs(percentage) > self.significant_percent,
                severity=self.classifier.classify(
                    variance, cost_impact if unit_cost is not None else None, unit_cost
                ),
                approximate=product_id in approximate,
            ))

        findings.sort(key=lambda f: (-abs(f.variance_percentage), f.product_name.lower(), f.product_id))

        report = VarianceReport(
            restaurant_id=restaurant_id,
            date_from=date_from,
            date_to=date_to,
            total_cost_impact=sum((f.cost_impact for f in findings), ZERO),
            significant_count=sum(1 for f in findings if f.is_significant),
            unmapped_items=sorted(unmapped),
            findings=findings,
        )

        logger.info(
            "Usage variance analysed: restaurant=%s, window=%s..%s, findings=%s, significant=%s, unmapped=%s",
            restaurant_id, date_from, date_to, len(findings), report.significant_count, len(unmapped),
        )
        return report
