"""Restaurant model."""

from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockrecon.db.base import Base, TimestampMixin


class Restaurant(Base, TimestampMixin):
    """A restaurant whose inventory is counted and analysed."""

    __tablename__ = "restaurants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    products: Mapped[list["Product"]] = relationship("Product", back_populates="restaurant")
