"""Unit conversion for recipe usage, purchase packaging and ledger units.

Converts a quantity expressed in one unit (recipe usage, e.g. "2 cup") into
the equivalent quantity of another unit, most often the unit the product is
purchased in (e.g. "bottle", "case", "kg").

Precedence:
1. Same unit -> returned unchanged
2. Product override table ("cup->g": 185) -> used verbatim, reverse derived
3. Generic family rules (mass, volume, count) via a base-unit factor table
4. Ingredient density defaults (volume <-> mass for rice, flour, ...)
5. Package math when the target/source is the product's container label
   ("bottle" holding 750 ml, "case" holding 24 each)

Anything else fails with a ConversionError subclass. Callers that only need
a preview or a cost estimate use ``impact`` / ``to_purchase_units`` which
degrade to raw purchase-unit math instead of failing.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from stockrecon.services.adapters.base import ProductInfo
from stockrecon.services.errors import (
    ConversionError,
    IncompatibleUnits,
    MissingPackageInfo,
    UnknownUnit,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class UnitFamily(str, Enum):
    VOLUME = "volume"
    MASS = "mass"
    COUNT = "count"
    CONTAINER = "container"
    UNKNOWN = "unknown"


# Volume: base unit = ml
VOLUME_UNITS: Dict[str, Decimal] = {
    "ml": Decimal("1"),
    "cl": Decimal("10"),
    "dl": Decimal("100"),
    "l": Decimal("1000"),
    "fl oz": Decimal("29.5735"),
    "cup": Decimal("236.588"),
    "tbsp": Decimal("14.7868"),
    "tsp": Decimal("4.92892"),
    "pint": Decimal("473.176"),
    "qt": Decimal("946.353"),
    "gal": Decimal("3785.41"),
}

# Mass: base unit = g
MASS_UNITS: Dict[str, Decimal] = {
    "mg": Decimal("0.001"),
    "g": Decimal("1"),
    "kg": Decimal("1000"),
    "oz": Decimal("28.3495"),
    "lb": Decimal("453.592"),
}

# Count: base unit = each
COUNT_UNITS: Dict[str, Decimal] = {
    "each": Decimal("1"),
    "dozen": Decimal("12"),
}

# Purchase packaging labels: only meaningful together with a package size
CONTAINER_UNITS = {
    "bag", "box", "case", "package", "pack", "container", "bottle", "can",
    "jar", "keg", "carton", "tub", "bucket", "sleeve", "roll", "tray",
}

UNIT_ALIASES: Dict[str, str] = {
    "milliliter": "ml", "millilitre": "ml", "mls": "ml",
    "centiliter": "cl", "deciliter": "dl",
    "liter": "l", "litre": "l", "liters": "l", "litres": "l", "ltr": "l",
    "floz": "fl oz", "fl_oz": "fl oz", "fl. oz": "fl oz", "fluid ounce": "fl oz", "fluid oz": "fl oz",
    "cups": "cup", "c": "cup",
    "tablespoon": "tbsp", "tablespoons": "tbsp", "tbs": "tbsp", "tbl": "tbsp",
    "teaspoon": "tsp", "teaspoons": "tsp",
    "pt": "pint", "pints": "pint",
    "quart": "qt", "quarts": "qt",
    "gallon": "gal", "gallons": "gal",
    "milligram": "mg", "gram": "g", "grams": "g", "gr": "g",
    "kilogram": "kg", "kilograms": "kg", "kgs": "kg",
    "ounce": "oz", "ounces": "oz",
    "pound": "lb", "pounds": "lb", "lbs": "lb",
    "ea": "each", "unit": "each", "units": "each", "piece": "each", "pieces": "each",
    "pc": "each", "pcs": "each", "item": "each", "items": "each",
    "dz": "dozen",
    "bags": "bag", "boxes": "box", "cases": "case", "packages": "package", "pkg": "package",
    "packs": "pack", "containers": "container", "bottles": "bottle", "btl": "bottle",
    "cans": "can", "jars": "jar", "kegs": "keg", "cartons": "carton",
}

# Grams per cup for common dry ingredients, matched by product name
DENSITY_CUP_TO_GRAMS: Dict[str, Decimal] = {
    "brown sugar": Decimal("213"),
    "rice": Decimal("180"),
    "flour": Decimal("120"),
    "sugar": Decimal("200"),
    "butter": Decimal("227"),
}

_FAMILY_TABLES = {
    UnitFamily.VOLUME: VOLUME_UNITS,
    UnitFamily.MASS: MASS_UNITS,
    UnitFamily.COUNT: COUNT_UNITS,
}

_STANDARD_METHODS = {
    UnitFamily.VOLUME: "volume_to_volume",
    UnitFamily.MASS: "weight_to_weight",
    UnitFamily.COUNT: "count_to_count",
}


def normalize_unit(unit: Optional[str]) -> str:
    """Lower-case, trim and resolve aliases. Unknown units are returned as-is."""
    if unit is None:
        return ""
    normalized = " ".join(unit.lower().strip().split())
    return UNIT_ALIASES.get(normalized, normalized)


def unit_family(unit: Optional[str]) -> UnitFamily:
    normalized = normalize_unit(unit)
    if normalized in VOLUME_UNITS:
        return UnitFamily.VOLUME
    if normalized in MASS_UNITS:
        return UnitFamily.MASS
    if normalized in COUNT_UNITS:
        return UnitFamily.COUNT
    if normalized in CONTAINER_UNITS:
        return UnitFamily.CONTAINER
    return UnitFamily.UNKNOWN


def density_grams_per_cup(product_name: Optional[str]) -> Optional[Decimal]:
    """Density default for a product, by name. Longest ingredient match wins."""
    if not product_name:
        return None
    name = product_name.lower()
    for ingredient in sorted(DENSITY_CUP_TO_GRAMS, key=len, reverse=True):
        if ingredient in name:
            return DENSITY_CUP_TO_GRAMS[ingredient]
    return None


# ============== Results ==============

@dataclass(frozen=True)
class Quantity:
    """A converted quantity and how it was obtained."""
    value: Decimal
    unit: str
    method: str = "1:1"
    product_specific: bool = False
    path: Tuple[str, ...] = ()


@dataclass
class InventoryImpact:
    """What one recipe usage does to inventory and cost."""
    inventory_deduction: Decimal
    inventory_deduction_unit: str
    percentage_of_package: Decimal
    cost_impact: Decimal
    approximate: bool = False
    warning: Optional[str] = None
    conversion: Optional[Quantity] = None


@dataclass
class PurchaseDeduction:
    """Recipe usage expressed in the product's purchase unit."""
    quantity: Decimal
    unit: str
    method: str
    approximate: bool = False
    warning: Optional[str] = None


@dataclass
class PortionYield:
    total_portions: Decimal
    cost_per_portion: Optional[Decimal] = None
    conversion: Optional[Quantity] = None


@dataclass
class _Context:
    """Working state of one conversion: product overrides and audit path."""
    product: Optional[ProductInfo]
    path: List[str] = field(default_factory=list)


# ============== Service ==============

class UnitConversionService:
    """Pure unit math. No state, no I/O."""

    def convert(
        self,
        quantity: Decimal,
        from_unit: str,
        to_unit: str,
        product: Optional[ProductInfo] = None,
    ) -> Quantity:
        """Convert *quantity* from *from_unit* to *to_unit*.

        Raises:
            UnknownUnit: a unit belongs to no known family.
            IncompatibleUnits: units belong to different families and nothing
                bridges them, or neither side is the product's own container.
            MissingPackageInfo: a container label is involved but the product
                has no package size for it.
        """
        quantity = Decimal(quantity)
        if from_unit == to_unit:
            return Quantity(quantity, to_unit)

        src = normalize_unit(from_unit)
        dst = normalize_unit(to_unit)
        if src == dst:
            return Quantity(quantity, to_unit)

        product_name = product.name if product else ""

        override = self._override_factor(product, src, dst)
        if override is not None:
            return Quantity(
                quantity * override,
                to_unit,
                method="override",
                product_specific=True,
                path=(src, dst),
            )

        src, dst = self._resolve_ounces(src, dst)
        src_family = unit_family(src)
        dst_family = unit_family(dst)

        if src_family == UnitFamily.CONTAINER or dst_family == UnitFamily.CONTAINER:
            return self._convert_package(quantity, src, dst, from_unit, to_unit, product)

        if src_family == UnitFamily.UNKNOWN:
            raise UnknownUnit(from_unit, from_unit, to_unit, product_name)
        if dst_family == UnitFamily.UNKNOWN:
            raise UnknownUnit(to_unit, from_unit, to_unit, product_name)

        if src == dst:
            return Quantity(quantity, to_unit, method=_STANDARD_METHODS[src_family])

        if src_family == dst_family:
            table = _FAMILY_TABLES[src_family]
            return Quantity(
                quantity * table[src] / table[dst],
                to_unit,
                method=_STANDARD_METHODS[src_family],
                path=(src, _base_unit(src_family), dst),
            )

        density = self._convert_density(quantity, src, dst, src_family, dst_family, product)
        if density is not None:
            return Quantity(density[0], to_unit, method=density[1], product_specific=True, path=(src, "cup", "g", dst))

        raise IncompatibleUnits(from_unit, to_unit, product_name)

    def impact(
        self,
        recipe_qty: Decimal,
        recipe_unit: str,
        purchase_qty: Decimal,
        purchase_unit: str,
        product: Optional[ProductInfo],
        unit_cost: Optional[Decimal],
        package_size: Optional[Decimal] = None,
        package_unit: Optional[str] = None,
    ) -> InventoryImpact:
        """Inventory deduction, share of package and cost of one recipe usage.

        With a package size (e.g. 750 ml per bottle) the deduction is reported
        in the package unit and the percentage is taken against one package,
        whatever the purchase unit is. Without one, the deduction is expressed
        in the purchase unit against *purchase_qty*.

        Never raises on conversion problems: it falls back to treating the
        recipe quantity as purchase units and marks the result approximate.
        """
        recipe_qty = Decimal(recipe_qty)
        purchase_qty = Decimal(purchase_qty)
        cost = Decimal(unit_cost) if unit_cost is not None else ZERO

        try:
            if package_size is not None and package_unit:
                package_size = Decimal(package_size)
                if package_size <= 0:
                    raise MissingPackageInfo(recipe_unit, package_unit, product.name if product else "")
                conversion = self.convert(recipe_qty, recipe_unit, package_unit, product)
                fraction = conversion.value / package_size
                return InventoryImpact(
                    inventory_deduction=conversion.value,
                    inventory_deduction_unit=package_unit,
                    percentage_of_package=fraction * HUNDRED,
                    cost_impact=fraction * cost,
                    conversion=conversion,
                )

            conversion = self.convert(recipe_qty, recipe_unit, purchase_unit, product)
            fraction = _safe_fraction(conversion.value, purchase_qty)
            return InventoryImpact(
                inventory_deduction=conversion.value,
                inventory_deduction_unit=purchase_unit,
                percentage_of_package=fraction * HUNDRED,
                cost_impact=fraction * cost,
                conversion=conversion,
            )
        except ConversionError as exc:
            warning = f"{exc}. Using 1:1 ratio."
            logger.warning("Inventory impact fallback: %s", warning)
            fraction = _safe_fraction(recipe_qty, purchase_qty)
            return InventoryImpact(
                inventory_deduction=recipe_qty,
                inventory_deduction_unit=purchase_unit,
                percentage_of_package=fraction * HUNDRED,
                cost_impact=fraction * cost,
                approximate=True,
                warning=warning,
            )

    def to_purchase_units(
        self,
        recipe_qty: Decimal,
        recipe_unit: str,
        product: ProductInfo,
    ) -> PurchaseDeduction:
        """Express a recipe quantity in the product's purchase unit.

        Falls back to 1:1 with a warning when no conversion exists.
        """
        recipe_qty = Decimal(recipe_qty)
        try:
            conversion = self.convert(recipe_qty, recipe_unit, product.purchase_unit, product)
        except ConversionError as exc:
            warning = (
                f"Could not convert {recipe_qty} {recipe_unit} to {product.purchase_unit} "
                f"(package unit: {product.size_unit or '-'}). Using 1:1 ratio."
            )
            logger.warning("%s (%s)", warning, exc)
            return PurchaseDeduction(
                quantity=recipe_qty,
                unit=product.purchase_unit,
                method="fallback_1:1",
                approximate=True,
                warning=warning,
            )
        return PurchaseDeduction(
            quantity=conversion.value,
            unit=product.purchase_unit,
            method=conversion.method,
        )

    def portions(
        self,
        purchase_qty: Decimal,
        purchase_unit: str,
        per_portion_qty: Decimal,
        recipe_unit: str,
        product: Optional[ProductInfo] = None,
    ) -> PortionYield:
        """How many recipe-sized portions *purchase_qty* purchase units yield.

        For previews only. Raises ConversionError when the recipe unit cannot
        be expressed in the purchase unit.
        """
        purchase_qty = Decimal(purchase_qty)
        conversion = self.convert(per_portion_qty, recipe_unit, purchase_unit, product)
        if conversion.value == 0:
            return PortionYield(total_portions=ZERO, conversion=conversion)

        total_portions = purchase_qty / conversion.value
        cost_per_portion = None
        if product is not None and product.unit_cost is not None and purchase_qty > 0:
            cost_per_portion = product.unit_cost * conversion.value / purchase_qty
        return PortionYield(
            total_portions=total_portions,
            cost_per_portion=cost_per_portion,
            conversion=conversion,
        )

    # ----- internals -----

    @staticmethod
    def _override_factor(product: Optional[ProductInfo], src: str, dst: str) -> Optional[Decimal]:
        if product is None or not product.conversion_overrides:
            return None

        overrides: Dict[Tuple[str, str], Decimal] = {}
        for key, factor in product.conversion_overrides.items():
            if "->" not in key:
                continue
            left, right = key.split("->", 1)
            overrides[(normalize_unit(left), normalize_unit(right))] = Decimal(str(factor))

        if (src, dst) in overrides:
            return overrides[(src, dst)]
        reverse = overrides.get((dst, src))
        if reverse:
            return 1 / reverse
        return None

    @staticmethod
    def _resolve_ounces(src: str, dst: str) -> Tuple[str, str]:
        """Read "oz" as fluid ounces when the other side is a volume."""
        if src == "oz" and unit_family(dst) == UnitFamily.VOLUME:
            src = "fl oz"
        if dst == "oz" and unit_family(src) == UnitFamily.VOLUME:
            dst = "fl oz"
        return src, dst

    def _convert_density(
        self,
        quantity: Decimal,
        src: str,
        dst: str,
        src_family: UnitFamily,
        dst_family: UnitFamily,
        product: Optional[ProductInfo],
    ) -> Optional[Tuple[Decimal, str]]:
        grams_per_cup = density_grams_per_cup(product.name if product else None)
        if grams_per_cup is None:
            return None

        cup_ml = VOLUME_UNITS["cup"]
        if src_family == UnitFamily.VOLUME and dst_family == UnitFamily.MASS:
            cups = quantity * VOLUME_UNITS[src] / cup_ml
            return cups * grams_per_cup / MASS_UNITS[dst], "density_to_weight"
        if src_family == UnitFamily.MASS and dst_family == UnitFamily.VOLUME:
            cups = quantity * MASS_UNITS[src] / grams_per_cup
            return cups * cup_ml / VOLUME_UNITS[dst], "density_to_volume"
        return None

    def _convert_package(
        self,
        quantity: Decimal,
        src: str,
        dst: str,
        from_unit: str,
        to_unit: str,
        product: Optional[ProductInfo],
    ) -> Quantity:
        """Convert into or out of the product's container label via its package size."""
        product_name = product.name if product else ""
        if (
            product is None
            or not product.size_value
            or product.size_value <= 0
            or not product.size_unit
        ):
            raise MissingPackageInfo(from_unit, to_unit, product_name)

        container = normalize_unit(product.purchase_unit)
        size_value = Decimal(product.size_value)

        if dst == container:
            inner = self.convert(quantity, from_unit, product.size_unit, product)
            value = inner.value / size_value
        elif src == container:
            inner = self.convert(size_value * quantity, product.size_unit, to_unit, product)
            value = inner.value
        else:
            raise IncompatibleUnits(
                from_unit,
                to_unit,
                product_name,
                detail=f"Neither '{from_unit}' nor '{to_unit}' is the '{container}' package",
            )

        method = inner.method
        if unit_family(product.size_unit) == UnitFamily.COUNT:
            method = "count_to_container"
        elif method == "1:1":
            method = _STANDARD_METHODS.get(unit_family(product.size_unit), method)

        return Quantity(
            value,
            to_unit,
            method=method,
            product_specific=inner.product_specific,
            path=inner.path + (container,),
        )


def _base_unit(family: UnitFamily) -> str:
    return {UnitFamily.VOLUME: "ml", UnitFamily.MASS: "g", UnitFamily.COUNT: "each"}[family]


def _safe_fraction(numerator: Decimal, denominator: Decimal) -> Decimal:
    return numerator / denominator if denominator else ZERO
