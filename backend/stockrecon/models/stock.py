"""Inventory ledger model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockrecon.db.base import Base


class TransactionType(str, Enum):
    """Type tags written to the inventory ledger."""

    SALE_DEDUCTION = "sale_deduction"  # From POS sale via recipe
    ADJUSTMENT = "adjustment"  # From a completed count
    PURCHASE = "purchase"  # Goods received
    WASTE = "waste"  # Spoilage, breakage
    TRANSFER = "transfer"


class InventoryTransaction(Base):
    """Ledger of all stock changes (single source of truth)."""

    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)  # signed
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    total_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # RECON-<session id>, ...
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="transactions")
