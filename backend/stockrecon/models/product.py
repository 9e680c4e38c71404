"""Product model."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockrecon.db.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """Product in the catalog."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    sku: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    barcode: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    uom_purchase: Mapped[str] = mapped_column(String(30), default="each", nullable=False)  # bottle, case, kg, ...
    cost_per_unit: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    current_stock: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)

    # Package size: e.g. 750 ml in one "bottle"
    size_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    size_unit: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # {"cup->g": 185, ...}
    conversion_overrides: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    restaurant: Mapped["Restaurant"] = relationship("Restaurant", back_populates="products")
    recipe_ingredients: Mapped[list["RecipeIngredient"]] = relationship(
        "RecipeIngredient", back_populates="product"
    )
    transactions: Mapped[list["InventoryTransaction"]] = relationship(
        "InventoryTransaction", back_populates="product"
    )
