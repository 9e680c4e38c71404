"""SQLAlchemy models."""

from stockrecon.models.restaurant import Restaurant
from stockrecon.models.product import Product
from stockrecon.models.recipe import Recipe, RecipeIngredient
from stockrecon.models.pos import PosSale
from stockrecon.models.stock import InventoryTransaction, TransactionType
from stockrecon.models.reconciliation import (
    ReconciliationSession,
    ReconciliationItem,
    ReconciliationItemFind,
    SessionStatus,
)

__all__ = [
    "Restaurant",
    "Product",
    "Recipe",
    "RecipeIngredient",
    "PosSale",
    "InventoryTransaction",
    "TransactionType",
    "ReconciliationSession",
    "ReconciliationItem",
    "ReconciliationItemFind",
    "SessionStatus",
]
