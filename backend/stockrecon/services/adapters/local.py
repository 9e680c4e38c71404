"""Collaborators backed by the local SQLAlchemy database."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockrecon.core.config import settings
from stockrecon.models import (
    InventoryTransaction,
    PosSale,
    Product,
    Recipe,
    ReconciliationItem,
    ReconciliationItemFind,
    ReconciliationSession,
    SessionStatus,
)
from stockrecon.schemas.reconciliation import StockAdjustment
from stockrecon.services.adapters.base import (
    CatalogAdapter,
    FindRecord,
    IngredientInfo,
    ItemRecord,
    LedgerAdapter,
    LedgerEntry,
    ProductInfo,
    RecipeCatalogAdapter,
    RecipeInfo,
    SaleRecord,
    SalesFeedAdapter,
    SessionRecord,
    SessionStore,
    StockAdjustmentWriter,
)
from stockrecon.services.errors import (
    FindNotFound,
    ItemNotFound,
    SessionAlreadyActive,
    SessionNotActive,
    SessionNotFound,
)

logger = logging.getLogger(__name__)


def _day_bounds(date_from: date, date_to: date):
    return (
        datetime.combine(date_from, datetime.min.time()),
        datetime.combine(date_to, datetime.max.time()),
    )


def to_product_info(p: Product) -> ProductInfo:
    overrides = {
        key: Decimal(str(factor))
        for key, factor in (p.conversion_overrides or {}).items()
    }
    return ProductInfo(
        id=p.id,
        restaurant_id=p.restaurant_id,
        name=p.name,
        sku=p.sku,
        barcode=p.barcode,
        purchase_unit=p.uom_purchase,
        unit_cost=p.cost_per_unit,
        on_hand=p.current_stock if p.current_stock is not None else Decimal("0"),
        size_value=p.size_value,
        size_unit=p.size_unit,
        conversion_overrides=overrides,
        category=p.category,
        active=p.active,
    )


# ============== Read-only collaborators ==============

class LocalCatalog(CatalogAdapter):
    """Products from the local database."""

    def __init__(self, db: Session):
        self.db = db

    def get_active_products(self, restaurant_id: int) -> List[ProductInfo]:
        products = (
            self.db.query(Product)
            .filter(Product.restaurant_id == restaurant_id, Product.active == True)
            .order_by(Product.name, Product.id)
            .all()
        )
        return [to_product_info(p) for p in products]

    def get_product(self, product_id: int) -> Optional[ProductInfo]:
        p = self.db.query(Product).filter(Product.id == product_id).first()
        if not p:
            return None
        return to_product_info(p)


class LocalRecipeCatalog(RecipeCatalogAdapter):
    """Active recipes from the local database."""

    def __init__(self, db: Session):
        self.db = db

    def get_recipes_by_pos_item_name(self, restaurant_id: int) -> Dict[str, RecipeInfo]:
        recipes = (
            self.db.query(Recipe)
            .filter(
                Recipe.restaurant_id == restaurant_id,
                Recipe.is_active == True,
                Recipe.pos_item_name.isnot(None),
            )
            .order_by(Recipe.id)
            .all()
        )

        result: Dict[str, RecipeInfo] = {}
        for recipe in recipes:
            if recipe.pos_item_name in result:
                logger.debug(
                    "Recipe %s shadowed by %s for POS item %r",
                    recipe.id, result[recipe.pos_item_name].id, recipe.pos_item_name,
                )
                continue
            result[recipe.pos_item_name] = RecipeInfo(
                id=recipe.id,
                name=recipe.name,
                pos_item_name=recipe.pos_item_name,
                ingredients=[
                    IngredientInfo(
                        product_id=ing.product_id,
                        quantity=ing.quantity,
                        unit=ing.unit,
                    )
                    for ing in recipe.ingredients
                ],
            )
        return result


class LocalSalesFeed(SalesFeedAdapter):
    """POS sales lines from the local database."""

    def __init__(self, db: Session):
        self.db = db

    def get_sales(self, restaurant_id: int, date_from: date, date_to: date) -> List[SaleRecord]:
        sales = (
            self.db.query(PosSale)
            .filter(
                PosSale.restaurant_id == restaurant_id,
                PosSale.sale_date >= date_from,
                PosSale.sale_date <= date_to,
            )
            .order_by(PosSale.sale_date, PosSale.id)
            .all()
        )
        return [
            SaleRecord(pos_item_name=s.pos_item_name, quantity=s.quantity, sale_date=s.sale_date)
            for s in sales
        ]


class LocalLedger(LedgerAdapter):
    """Inventory transactions from the local database."""

    def __init__(self, db: Session):
        self.db = db

    def get_transactions(
        self,
        restaurant_id: int,
        date_from: date,
        date_to: date,
        transaction_type: Optional[str] = None,
    ) -> List[LedgerEntry]:
        start_dt, end_dt = _day_bounds(date_from, date_to)
        query = self.db.query(InventoryTransaction).filter(
            InventoryTransaction.restaurant_id == restaurant_id,
            InventoryTransaction.created_at >= start_dt,
            InventoryTransaction.created_at <= end_dt,
        )
        if transaction_type:
            query = query.filter(InventoryTransaction.transaction_type == transaction_type)

        return [
            LedgerEntry(
                id=t.id,
                product_id=t.product_id,
                quantity=t.quantity,
                unit_cost=t.unit_cost,
                transaction_type=t.transaction_type,
                created_at=t.created_at,
            )
            for t in query.order_by(InventoryTransaction.created_at, InventoryTransaction.id).all()
        ]

    def count_transactions(self, restaurant_id: int) -> int:
        return (
            self.db.query(func.count(InventoryTransaction.id))
            .filter(InventoryTransaction.restaurant_id == restaurant_id)
            .scalar()
        ) or 0


# ============== Session store ==============

class LocalSessionStore(SessionStore):
    """Count sessions in the local database.

    Every write commits its own transaction and rolls back on failure, so a
    failed item write never affects other items of the session.
    """

    def __init__(self, db: Session):
        self.db = db

    # ----- conversions -----

    @staticmethod
    def _session_record(session: ReconciliationSession) -> SessionRecord:
        return SessionRecord(
            id=session.id,
            restaurant_id=session.restaurant_id,
            status=session.status,
            started_at=session.started_at,
            submitted_at=session.submitted_at,
            cancelled_at=session.cancelled_at,
            notes=session.notes,
            total_items_counted=session.total_items_counted or 0,
            items_with_variance=session.items_with_variance or 0,
            total_shrinkage_value=session.total_shrinkage_value or Decimal("0"),
        )

    @staticmethod
    def _item_record(item: ReconciliationItem) -> ItemRecord:
        product = item.product
        return ItemRecord(
            id=item.id,
            session_id=item.session_id,
            product_id=item.product_id,
            product_name=product.name if product else "Unknown",
            sku=product.sku if product else None,
            barcode=product.barcode if product else None,
            unit=product.uom_purchase if product else None,
            expected_quantity=item.expected_quantity,
            actual_quantity=item.actual_quantity,
            unit_cost=item.unit_cost,
            notes=item.notes,
            counted_at=item.counted_at,
            category=product.category if product else None,
        )

    @staticmethod
    def _find_record(find: ReconciliationItemFind) -> FindRecord:
        return FindRecord(
            id=find.id,
            item_id=find.item_id,
            quantity=find.quantity,
            location=find.location,
            found_at=find.found_at,
        )

    def _load_session(self, session_id: int) -> ReconciliationSession:
        session = (
            self.db.query(ReconciliationSession)
            .filter(ReconciliationSession.id == session_id)
            .first()
        )
        if not session:
            raise SessionNotFound(session_id)
        return session

    def _load_item(self, item_id: int) -> ReconciliationItem:
        item = self.db.query(ReconciliationItem).filter(ReconciliationItem.id == item_id).first()
        if not item:
            raise ItemNotFound(item_id)
        return item

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Session store failed to %s", action)
            raise

    # ----- sessions -----

    def create_session(
        self,
        restaurant_id: int,
        items: List[ItemRecord],
        notes: Optional[str] = None,
    ) -> SessionRecord:
        existing = self.get_active_session(restaurant_id)
        if existing:
            raise SessionAlreadyActive(restaurant_id, existing.id)

        session = ReconciliationSession(
            restaurant_id=restaurant_id,
            status=SessionStatus.COUNTING,
            started_at=datetime.now(timezone.utc),
            notes=notes,
        )
        try:
            self.db.add(session)
            self.db.flush()
            for item in items:
                self.db.add(ReconciliationItem(
                    session_id=session.id,
                    product_id=item.product_id,
                    expected_quantity=item.expected_quantity,
                    unit_cost=item.unit_cost,
                ))
            self.db.commit()
        except IntegrityError as exc:
            # Lost the race against a concurrent start
            self.db.rollback()
            existing = self.get_active_session(restaurant_id)
            raise SessionAlreadyActive(
                restaurant_id, existing.id if existing else None
            ) from exc
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to create count session for restaurant %s", restaurant_id)
            raise

        self.db.refresh(session)
        return self._session_record(session)

    def get_session(self, session_id: int) -> Optional[SessionRecord]:
        session = (
            self.db.query(ReconciliationSession)
            .filter(ReconciliationSession.id == session_id)
            .first()
        )
        return self._session_record(session) if session else None

    def get_active_session(self, restaurant_id: int) -> Optional[SessionRecord]:
        session = (
            self.db.query(ReconciliationSession)
            .filter(
                ReconciliationSession.restaurant_id == restaurant_id,
                ReconciliationSession.status == SessionStatus.COUNTING,
            )
            .first()
        )
        return self._session_record(session) if session else None

    def list_sessions(
        self,
        restaurant_id: int,
        status: Optional[SessionStatus] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> List[SessionRecord]:
        query = self.db.query(ReconciliationSession).filter(
            ReconciliationSession.restaurant_id == restaurant_id
        )
        if status is not None:
            query = query.filter(ReconciliationSession.status == status)
        if started_from is not None:
            query = query.filter(ReconciliationSession.started_at >= started_from)
        if started_to is not None:
            query = query.filter(ReconciliationSession.started_at <= started_to)

        sessions = query.order_by(ReconciliationSession.started_at, ReconciliationSession.id).all()
        return [self._session_record(s) for s in sessions]

    def save_session(self, session: SessionRecord) -> SessionRecord:
        row = self._load_session(session.id)
        row.notes = session.notes
        row.total_items_counted = session.total_items_counted
        row.items_with_variance = session.items_with_variance
        row.total_shrinkage_value = session.total_shrinkage_value
        self._commit(f"save session {session.id}")
        return self._session_record(row)

    def update_session_status(self, session_id: int, status: SessionStatus) -> SessionRecord:
        row = self._load_session(session_id)
        if row.status != SessionStatus.COUNTING:
            raise SessionNotActive(session_id, row.status.value)

        row.status = status
        now = datetime.now(timezone.utc)
        if status == SessionStatus.COMPLETED:
            row.submitted_at = now
        elif status == SessionStatus.CANCELLED:
            row.cancelled_at = now
        self._commit(f"move session {session_id} to {status.value}")
        return self._session_record(row)

    def cancel_session(self, session_id: int) -> SessionRecord:
        row = self._load_session(session_id)
        if row.status != SessionStatus.COUNTING:
            raise SessionNotActive(session_id, row.status.value)

        for item in row.items:
            item.actual_quantity = None
            item.notes = None
            item.counted_at = None
            item.finds.clear()
        row.total_items_counted = 0
        row.items_with_variance = 0
        row.total_shrinkage_value = Decimal("0")
        row.status = SessionStatus.CANCELLED
        row.cancelled_at = datetime.now(timezone.utc)
        self._commit(f"cancel session {session_id}")
        return self._session_record(row)

    # ----- items -----

    def list_items(self, session_id: int) -> List[ItemRecord]:
        items = (
            self.db.query(ReconciliationItem)
            .filter(ReconciliationItem.session_id == session_id)
            .order_by(ReconciliationItem.id)
            .all()
        )
        return [self._item_record(i) for i in items]

    def _load_writable_item(self, item_id: int) -> ReconciliationItem:
        item = self._load_item(item_id)
        if item.session.status != SessionStatus.COUNTING:
            raise SessionNotActive(item.session_id, item.session.status.value)
        return item

    def save_item(self, item: ItemRecord) -> ItemRecord:
        row = self._load_writable_item(item.id)
        row.actual_quantity = item.actual_quantity
        row.notes = item.notes
        row.counted_at = item.counted_at
        self._commit(f"save item {item.id}")
        return self._item_record(row)

    # ----- finds -----

    def list_finds(self, item_id: int) -> List[FindRecord]:
        finds = (
            self.db.query(ReconciliationItemFind)
            .filter(ReconciliationItemFind.item_id == item_id)
            .order_by(ReconciliationItemFind.id)
            .all()
        )
        return [self._find_record(f) for f in finds]

    def get_find(self, find_id: int) -> Optional[FindRecord]:
        find = (
            self.db.query(ReconciliationItemFind)
            .filter(ReconciliationItemFind.id == find_id)
            .first()
        )
        return self._find_record(find) if find else None

    def add_find(self, item_id: int, quantity: Decimal, location: Optional[str] = None) -> FindRecord:
        self._load_writable_item(item_id)
        find = ReconciliationItemFind(
            item_id=item_id,
            quantity=quantity,
            location=location,
            found_at=datetime.now(timezone.utc),
        )
        self.db.add(find)
        self._commit(f"add find to item {item_id}")
        return self._find_record(find)

    def delete_find(self, find_id: int) -> FindRecord:
        find = (
            self.db.query(ReconciliationItemFind)
            .filter(ReconciliationItemFind.id == find_id)
            .first()
        )
        if not find:
            raise FindNotFound(find_id)
        self._load_writable_item(find.item_id)

        record = self._find_record(find)
        self.db.delete(find)
        self._commit(f"delete find {find_id}")
        return record


# ============== Stock adjustment ==============

class LocalStockAdjuster(StockAdjustmentWriter):
    """Writes counted quantities back as on-hand stock.

    One ledger transaction per adjustment, tagged with the configured
    adjustment type and a ``RECON-<session id>`` reference.
    """

    def __init__(self, db: Session, transaction_type: Optional[str] = None):
        self.db = db
        self.transaction_type = transaction_type or settings.adjustment_transaction_type

    def apply_adjustments(
        self,
        restaurant_id: int,
        session_id: int,
        adjustments: List[StockAdjustment],
    ) -> int:
        written = 0
        try:
            for adj in adjustments:
                product = self.db.query(Product).filter(Product.id == adj.product_id).first()
                if not product:
                    logger.warning("Skipping adjustment for missing product %s", adj.product_id)
                    continue

                self.db.add(InventoryTransaction(
                    restaurant_id=restaurant_id,
                    product_id=adj.product_id,
                    quantity=adj.delta,
                    unit_cost=adj.unit_cost,
                    total_cost=adj.value,
                    transaction_type=self.transaction_type,
                    reason="Inventory count adjustment",
                    reference_id=f"RECON-{session_id}",
                ))
                product.current_stock = adj.counted_quantity
                written += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Count adjustments applied: session=%s, restaurant=%s, transactions=%s",
            session_id, restaurant_id, written,
        )
        return written
