"""Collaborator interfaces consumed by the engine.

The engine reads products, recipes, sales and ledger entries and persists
count sessions through these interfaces only:
- Catalog: active products and single product lookup
- Recipe catalog: bills of materials keyed by POS item name
- Sales feed: POS sale lines by date range
- Ledger: inventory transactions by date range and type
- Session store: count sessions, items and finds (read/write)
- Stock adjustment writer: applies a completed count to on-hand stock

Local SQLAlchemy implementations live in ``stockrecon.services.adapters.local``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from stockrecon.models.reconciliation import SessionStatus
from stockrecon.schemas.reconciliation import StockAdjustment


# ============== Data Transfer Objects ==============

@dataclass
class ProductInfo:
    """Product as seen by the engine."""
    id: int
    name: str
    purchase_unit: str = "each"
    restaurant_id: Optional[int] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    on_hand: Decimal = Decimal("0")
    size_value: Optional[Decimal] = None
    size_unit: Optional[str] = None
    conversion_overrides: Dict[str, Decimal] = field(default_factory=dict)
    category: Optional[str] = None
    active: bool = True


@dataclass
class IngredientInfo:
    product_id: int
    quantity: Decimal
    unit: str


@dataclass
class RecipeInfo:
    """A recipe and its bill of materials."""
    id: int
    name: str
    pos_item_name: str
    ingredients: List[IngredientInfo] = field(default_factory=list)


@dataclass
class SaleRecord:
    """A POS sale line."""
    pos_item_name: str
    quantity: Decimal
    sale_date: date


@dataclass
class LedgerEntry:
    """An inventory ledger transaction."""
    id: int
    product_id: int
    quantity: Decimal  # signed
    transaction_type: str
    created_at: datetime
    unit_cost: Optional[Decimal] = None


@dataclass
class SessionRecord:
    """Persisted state of a count session."""
    id: int
    restaurant_id: int
    status: SessionStatus
    started_at: datetime
    submitted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    total_items_counted: int = 0
    items_with_variance: int = 0
    total_shrinkage_value: Decimal = Decimal("0")

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.COUNTING


@dataclass
class ItemRecord:
    """Persisted state of one counted product. ``id`` is None before insert."""
    id: Optional[int]
    session_id: Optional[int]
    product_id: int
    product_name: str
    expected_quantity: Decimal
    actual_quantity: Optional[Decimal] = None
    unit_cost: Optional[Decimal] = None
    unit: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    notes: Optional[str] = None
    counted_at: Optional[datetime] = None
    category: Optional[str] = None


@dataclass
class FindRecord:
    """A partial count at one location."""
    id: int
    item_id: int
    quantity: Decimal
    location: Optional[str] = None
    found_at: Optional[datetime] = None


# ============== Interfaces ==============

class CatalogAdapter(ABC):
    """Read-only product catalog."""

    @abstractmethod
    def get_active_products(self, restaurant_id: int) -> List[ProductInfo]:
        """Fetch active products of a restaurant."""
        pass

    @abstractmethod
    def get_product(self, product_id: int) -> Optional[ProductInfo]:
        """Fetch a single product by ID."""
        pass


class RecipeCatalogAdapter(ABC):
    """Read-only recipe catalog."""

    @abstractmethod
    def get_recipes_by_pos_item_name(self, restaurant_id: int) -> Dict[str, RecipeInfo]:
        """Fetch active recipes keyed by their POS item name."""
        pass


class SalesFeedAdapter(ABC):
    """Read-only POS sales feed."""

    @abstractmethod
    def get_sales(self, restaurant_id: int, date_from: date, date_to: date) -> List[SaleRecord]:
        """Fetch sale lines with ``date_from <= sale_date <= date_to``."""
        pass


class LedgerAdapter(ABC):
    """Read-only inventory ledger."""

    @abstractmethod
    def get_transactions(
        self,
        restaurant_id: int,
        date_from: date,
        date_to: date,
        transaction_type: Optional[str] = None,
    ) -> List[LedgerEntry]:
        """Fetch transactions created within the date range, oldest first."""
        pass

    @abstractmethod
    def count_transactions(self, restaurant_id: int) -> int:
        """Number of ledger transactions recorded for a restaurant."""
        pass


class SessionStore(ABC):
    """Read/write storage for count sessions."""

    @abstractmethod
    def create_session(
        self,
        restaurant_id: int,
        items: List[ItemRecord],
        notes: Optional[str] = None,
    ) -> SessionRecord:
        """Atomically create a counting session with its item snapshot.

        Raises:
            SessionAlreadyActive: the restaurant already has a counting session.
        """
        pass

    @abstractmethod
    def get_session(self, session_id: int) -> Optional[SessionRecord]:
        pass

    @abstractmethod
    def get_active_session(self, restaurant_id: int) -> Optional[SessionRecord]:
        """The restaurant's counting session, if any."""
        pass

    @abstractmethod
    def list_sessions(
        self,
        restaurant_id: int,
        status: Optional[SessionStatus] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> List[SessionRecord]:
        """Sessions of a restaurant, oldest first."""
        pass

    @abstractmethod
    def list_items(self, session_id: int) -> List[ItemRecord]:
        pass

    @abstractmethod
    def save_item(self, item: ItemRecord) -> ItemRecord:
        """Persist one item's count atomically.

        Raises:
            SessionNotActive: the parent session is completed or cancelled.
        """
        pass

    @abstractmethod
    def list_finds(self, item_id: int) -> List[FindRecord]:
        pass

    @abstractmethod
    def get_find(self, find_id: int) -> Optional[FindRecord]:
        pass

    @abstractmethod
    def add_find(self, item_id: int, quantity: Decimal, location: Optional[str] = None) -> FindRecord:
        pass

    @abstractmethod
    def delete_find(self, find_id: int) -> FindRecord:
        """Delete a find and return it.

        Raises:
            FindNotFound: no such find.
        """
        pass

    @abstractmethod
    def save_session(self, session: SessionRecord) -> SessionRecord:
        """Persist notes and summary totals of a session without changing its status."""
        pass

    @abstractmethod
    def update_session_status(self, session_id: int, status: SessionStatus) -> SessionRecord:
        """Move a counting session to a terminal status.

        Raises:
            SessionNotActive: the session is already terminal.
        """
        pass

    @abstractmethod
    def cancel_session(self, session_id: int) -> SessionRecord:
        """Clear every count, note and find of a session and mark it cancelled.

        Both happen in one transaction: on failure the session keeps its
        counts and stays counting.

        Raises:
            SessionNotActive: the session is already terminal.
        """
        pass


class StockAdjustmentWriter(ABC):
    """Applies a completed count to on-hand stock."""

    @abstractmethod
    def apply_adjustments(
        self,
        restaurant_id: int,
        session_id: int,
        adjustments: List[StockAdjustment],
    ) -> int:
        """Write the adjustments. Returns the number of ledger entries written."""
        pass
