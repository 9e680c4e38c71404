"""Collaborator adapters: abstract interfaces and local database implementations."""

from stockrecon.services.adapters.base import (
    CatalogAdapter,
    RecipeCatalogAdapter,
    SalesFeedAdapter,
    LedgerAdapter,
    SessionStore,
    StockAdjustmentWriter,
    ProductInfo,
    RecipeInfo,
    IngredientInfo,
    SaleRecord,
    LedgerEntry,
    SessionRecord,
    ItemRecord,
    FindRecord,
)
from stockrecon.services.adapters.local import (
    LocalCatalog,
    LocalRecipeCatalog,
    LocalSalesFeed,
    LocalLedger,
    LocalSessionStore,
    LocalStockAdjuster,
    to_product_info,
)

__all__ = [
    "CatalogAdapter",
    "RecipeCatalogAdapter",
    "SalesFeedAdapter",
    "LedgerAdapter",
    "SessionStore",
    "StockAdjustmentWriter",
    "ProductInfo",
    "RecipeInfo",
    "IngredientInfo",
    "SaleRecord",
    "LedgerEntry",
    "SessionRecord",
    "ItemRecord",
    "FindRecord",
    "LocalCatalog",
    "LocalRecipeCatalog",
    "LocalSalesFeed",
    "LocalLedger",
    "LocalSessionStore",
    "LocalStockAdjuster",
    "to_product_info",
]
