"""Reconciliation (physical count) session, item and find models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockrecon.db.base import Base


class SessionStatus(str, Enum):
    """Status of a reconciliation session."""

    COUNTING = "counting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReconciliationSession(Base):
    """A physical inventory count for one restaurant."""

    __tablename__ = "reconciliation_sessions"
    __table_args__ = (
        # At most one counting session per restaurant
        Index(
            "uq_reconciliation_counting_restaurant",
            "restaurant_id",
            unique=True,
            sqlite_where=text("status = 'counting'"),
            postgresql_where=text("status = 'counting'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(
            SessionStatus,
            native_enum=False,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=SessionStatus.COUNTING,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # Totals written by save-progress and complete
    total_items_counted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_with_variance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_shrinkage_value: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)

    # Relationships
    items: Mapped[list["ReconciliationItem"]] = relationship(
        "ReconciliationItem", back_populates="session", cascade="all, delete-orphan"
    )


class ReconciliationItem(Base):
    """One product's expected vs counted quantity within a session."""

    __tablename__ = "reconciliation_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    expected_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    actual_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)  # NULL = not counted
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    counted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    session: Mapped["ReconciliationSession"] = relationship(
        "ReconciliationSession", back_populates="items"
    )
    product: Mapped["Product"] = relationship("Product")
    finds: Mapped[list["ReconciliationItemFind"]] = relationship(
        "ReconciliationItemFind", back_populates="item", cascade="all, delete-orphan"
    )


class ReconciliationItemFind(Base):
    """A partial count of an item found at one storage location."""

    __tablename__ = "reconciliation_item_finds"

    id: Mapped[int] = mapped_column(primary_key=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # e.g. "Walk-in", "Bar Back"
    found_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    item: Mapped["ReconciliationItem"] = relationship("ReconciliationItem", back_populates="finds")
