"""Physical inventory count sessions.

A count session snapshots every active product of a restaurant and lets
staff enter counted quantities item by item. State lives in an explicit
``CountingSession`` aggregate; the reducers below (``begin_edit``,
``apply_count``, ``merge_refresh``) are pure and return a new aggregate.

Committed vs in-flight values:
    ``items`` holds what the store has confirmed. ``input_values`` holds what
    the count sheet shows for each item, and ``pending_edits`` lists the items
    whose shown value has not been confirmed yet. A refresh from the store
    never overwrites the shown value of a pending item.

Lifecycle: counting -> completed | cancelled (both terminal). Completing
returns the stock adjustments to apply; the manager itself never writes to
the inventory ledger.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from stockrecon.models.reconciliation import SessionStatus
from stockrecon.schemas.reconciliation import (
    CompletionResult,
    CountedItemView,
    CountSummary,
    Severity,
    StockAdjustment,
)
from stockrecon.services.adapters.base import (
    CatalogAdapter,
    FindRecord,
    ItemRecord,
    SessionRecord,
    SessionStore,
)
from stockrecon.services.errors import (
    CancelNotConfirmed,
    CountCommitError,
    CountingError,
    FindNotFound,
    InvalidCountInput,
    ItemNotFound,
    NothingCounted,
    SessionNotActive,
    SessionNotFound,
)
from stockrecon.services.variance import VarianceClassifier, compute_variance

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class SortField(str, Enum):
    NAME = "name"
    UNIT = "unit"
    EXPECTED = "expected"
    ACTUAL = "actual"
    VARIANCE = "variance"
    STATUS = "status"


# ============== Aggregate ==============

@dataclass(frozen=True)
class CountingItem:
    """Committed state of one product in a count session."""
    id: int
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

    @property
    def is_counted(self) -> bool:
        return self.actual_quantity is not None

    @property
    def variance(self) -> Optional[Decimal]:
        return compute_variance(self.expected_quantity, self.actual_quantity, self.unit_cost)[0]

    @property
    def variance_value(self) -> Optional[Decimal]:
        return compute_variance(self.expected_quantity, self.actual_quantity, self.unit_cost)[1]

    @classmethod
    def from_record(cls, record: ItemRecord) -> "CountingItem":
        return cls(
            id=record.id,
            product_id=record.product_id,
            product_name=record.product_name,
            expected_quantity=record.expected_quantity,
            actual_quantity=record.actual_quantity,
            unit_cost=record.unit_cost,
            unit=record.unit,
            sku=record.sku,
            barcode=record.barcode,
            notes=record.notes,
            counted_at=record.counted_at,
        )

    def to_record(self, session_id: int) -> ItemRecord:
        return ItemRecord(
            id=self.id,
            session_id=session_id,
            product_id=self.product_id,
            product_name=self.product_name,
            expected_quantity=self.expected_quantity,
            actual_quantity=self.actual_quantity,
            unit_cost=self.unit_cost,
            unit=self.unit,
            sku=self.sku,
            barcode=self.barcode,
            notes=self.notes,
            counted_at=self.counted_at,
        )


@dataclass(frozen=True)
class CountingSession:
    """A count session with its items and the count sheet's shown values."""
    id: int
    restaurant_id: int
    status: SessionStatus
    started_at: Optional[datetime] = None
    notes: Optional[str] = None
    items: Dict[int, CountingItem] = field(default_factory=dict)
    input_values: Dict[int, str] = field(default_factory=dict)
    pending_edits: FrozenSet[int] = frozenset()

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.COUNTING

    def get_item(self, item_id: int) -> CountingItem:
        try:
            return self.items[item_id]
        except KeyError:
            raise ItemNotFound(item_id, self.id) from None

    def display_value(self, item_id: int) -> str:
        return self.input_values.get(item_id, "")

    def counted_items(self) -> List[CountingItem]:
        return [item for item in self.items.values() if item.is_counted]


def format_quantity(value: Optional[Decimal]) -> str:
    """Render a quantity the way the count sheet shows it ("" for uncounted)."""
    if value is None:
        return ""
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def parse_count_input(raw_input: Optional[str]) -> Optional[Decimal]:
    """Parse a count entry. Empty means uncounted.

    Raises:
        InvalidCountInput: not a finite, non-negative number.
    """
    if raw_input is None:
        return None
    text = str(raw_input).strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise InvalidCountInput(raw_input) from None
    if not value.is_finite() or value < 0:
        raise InvalidCountInput(raw_input)
    return value


def session_from_records(record: SessionRecord, items: Iterable[ItemRecord]) -> CountingSession:
    counting_items = {r.id: CountingItem.from_record(r) for r in items}
    return CountingSession(
        id=record.id,
        restaurant_id=record.restaurant_id,
        status=record.status,
        started_at=record.started_at,
        notes=record.notes,
        items=counting_items,
        input_values={item_id: format_quantity(i.actual_quantity) for item_id, i in counting_items.items()},
    )


# ============== Reducers ==============

def begin_edit(session: CountingSession, item_id: int, raw_input: str) -> CountingSession:
    """Show *raw_input* for an item and mark it pending."""
    session.get_item(item_id)
    return replace(
        session,
        input_values={**session.input_values, item_id: raw_input},
        pending_edits=session.pending_edits | {item_id},
    )


def apply_count(
    session: CountingSession,
    item_id: int,
    committed: CountingItem,
    committed_input: Optional[str] = None,
) -> CountingSession:
    """Record a value the store confirmed.

    The pending mark is cleared only when the shown value is still the one
    that was committed; a newer in-flight value stays pending.
    """
    session.get_item(item_id)
    items = {**session.items, item_id: committed}
    input_values = dict(session.input_values)
    pending = session.pending_edits

    shown = input_values.get(item_id)
    if item_id not in pending or committed_input is None or shown == committed_input:
        input_values[item_id] = format_quantity(committed.actual_quantity)
        pending = pending - {item_id}

    return replace(session, items=items, input_values=input_values, pending_edits=pending)


def abandon_edit(session: CountingSession, item_id: int) -> CountingSession:
    """Drop an in-flight value and show the committed one again."""
    item = session.get_item(item_id)
    return replace(
        session,
        input_values={**session.input_values, item_id: format_quantity(item.actual_quantity)},
        pending_edits=session.pending_edits - {item_id},
    )


def merge_refresh(
    session: CountingSession,
    records: Iterable[ItemRecord],
    status: Optional[SessionStatus] = None,
) -> CountingSession:
    """Merge freshly read items, keeping the shown value of pending items."""
    items = dict(session.items)
    input_values = dict(session.input_values)
    for record in records:
        if record.id not in items:
            continue
        fresh = CountingItem.from_record(record)
        items[record.id] = fresh
        if record.id not in session.pending_edits:
            input_values[record.id] = format_quantity(fresh.actual_quantity)

    return replace(
        session,
        status=status or session.status,
        items=items,
        input_values=input_values,
    )


# ============== Pure queries ==============

def calculate_summary(session: CountingSession) -> CountSummary:
    """Progress and value totals over committed counts."""
    counted = session.counted_items()
    total_variance_value = ZERO
    shrinkage = ZERO
    overage = ZERO
    items_with_variance = 0

    for item in counted:
        if item.variance:
            items_with_variance += 1
        value = item.variance_value
        if value is None:
            continue
        total_variance_value += value
        if value < 0:
            shrinkage += abs(value)
        elif value > 0:
            overage += value

    total_items = len(session.items)
    progress = (Decimal(len(counted)) / total_items * HUNDRED) if total_items else ZERO

    return CountSummary(
        session_id=session.id,
        total_items=total_items,
        total_items_counted=len(counted),
        items_with_variance=items_with_variance,
        total_variance_value=total_variance_value,
        total_shrinkage_value=shrinkage - overage,
        total_overage_value=overage,
        progress_percent=progress,
    )


def filter_items(items: Iterable[CountingItem], search: Optional[str]) -> List[CountingItem]:
    """Case-insensitive substring match on product name or SKU."""
    items = list(items)
    term = (search or "").strip().lower()
    if not term:
        return items
    return [
        item for item in items
        if term in item.product_name.lower() or (item.sku and term in item.sku.lower())
    ]


_SEVERITY_RANK = {
    Severity.OK: 1,
    Severity.CAUTION: 2,
    Severity.ALERT: 3,
}


def sort_items(
    items: Iterable[CountingItem],
    sort_field: SortField = SortField.NAME,
    descending: bool = False,
    classifier: Optional[VarianceClassifier] = None,
) -> List[CountingItem]:
    """Sort count sheet items.

    Items without a value for the field (uncounted, no unit) always come
    first, whatever the direction. Ties break by name, then item id.
    """
    classifier = classifier or VarianceClassifier()

    def key_for(item: CountingItem):
        if sort_field == SortField.NAME:
            return item.product_name.lower()
        if sort_field == SortField.UNIT:
            return item.unit.lower() if item.unit else None
        if sort_field == SortField.EXPECTED:
            return item.expected_quantity
        if sort_field == SortField.ACTUAL:
            return item.actual_quantity
        if sort_field == SortField.VARIANCE:
            return item.variance
        severity = classifier.classify(item.variance, item.variance_value, item.unit_cost)
        return _SEVERITY_RANK.get(severity)

    def tie_break(item: CountingItem):
        return (item.product_name.lower(), item.id)

    missing = []
    present = []
    for item in items:
        key = key_for(item)
        (missing if key is None else present).append((key, item))

    missing.sort(key=lambda pair: tie_break(pair[1]))
    present.sort(key=lambda pair: tie_break(pair[1]))
    present.sort(key=lambda pair: pair[0], reverse=descending)
    return [item for _, item in missing] + [item for _, item in present]


def find_item_by_code(session: CountingSession, code: str) -> Optional[CountingItem]:
    """Exact, case-insensitive match on SKU or barcode."""
    code = (code or "").strip().lower()
    if not code:
        return None
    for item in session.items.values():
        if (item.sku and item.sku.lower() == code) or (item.barcode and item.barcode.lower() == code):
            return item
    return None


# ============== Manager ==============

class CountingSessionManager:
    """Runs count sessions against a session store and a product catalog."""

    def __init__(
        self,
        store: SessionStore,
        catalog: CatalogAdapter,
        classifier: Optional[VarianceClassifier] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.classifier = classifier or VarianceClassifier()
        self._sessions: Dict[int, CountingSession] = {}
        self._state_lock = threading.RLock()
        self._item_locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # ----- aggregate bookkeeping -----

    def _item_lock(self, item_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._item_locks[item_id]

    def _track(self, session: CountingSession) -> CountingSession:
        with self._state_lock:
            self._sessions[session.id] = session
        return session

    def _update(self, session_id: int, reducer: Callable[[CountingSession], CountingSession]) -> CountingSession:
        with self._state_lock:
            updated = reducer(self._sessions[session_id])
            self._sessions[session_id] = updated
            return updated

    def _current(self, session: CountingSession) -> CountingSession:
        with self._state_lock:
            tracked = self._sessions.get(session.id)
        if tracked is not None:
            return tracked

        # Closed sessions are no longer tracked; read them back from the store
        record = self.store.get_session(session.id)
        if not record:
            raise SessionNotFound(session.id)
        loaded = session_from_records(record, self.store.list_items(session.id))
        return self._track(loaded) if loaded.is_active else loaded

    def _release(self, session: CountingSession) -> None:
        """Stop tracking a closed session and drop its item locks."""
        with self._state_lock:
            self._sessions.pop(session.id, None)
        with self._locks_guard:
            for item_id in session.items:
                self._item_locks.pop(item_id, None)

    @staticmethod
    def _ensure_active(session: CountingSession) -> None:
        if not session.is_active:
            raise SessionNotActive(session.id, session.status.value)

    # ----- lifecycle -----

    def start_session(self, restaurant_id: int, notes: Optional[str] = None) -> CountingSession:
        """Snapshot the restaurant's active products into a new session.

        Raises:
            SessionAlreadyActive: the restaurant already has a counting session.
        """
        products = self.catalog.get_active_products(restaurant_id)
        snapshot = [
            ItemRecord(
                id=None,
                session_id=None,
                product_id=p.id,
                product_name=p.name,
                expected_quantity=p.on_hand,
                unit_cost=p.unit_cost,
                unit=p.purchase_unit,
                sku=p.sku,
                barcode=p.barcode,
                category=p.category,
            )
            for p in products
        ]
        record = self.store.create_session(restaurant_id, snapshot, notes=notes)
        session = self._track(session_from_records(record, self.store.list_items(record.id)))

        logger.info(
            "Count session started: ID=%s, restaurant=%s, items=%s",
            session.id, restaurant_id, len(session.items),
        )
        return session

    def open_session(self, session_id: int) -> CountingSession:
        """Load a session from the store and start tracking it."""
        record = self.store.get_session(session_id)
        if not record:
            raise SessionNotFound(session_id)
        loaded = session_from_records(record, self.store.list_items(session_id))
        return self._track(loaded) if loaded.is_active else loaded

    def get_active_session(self, restaurant_id: int) -> Optional[CountingSession]:
        record = self.store.get_active_session(restaurant_id)
        if not record:
            return None
        with self._state_lock:
            if record.id in self._sessions:
                return self._sessions[record.id]
        return self.open_session(record.id)

    # ----- count entry -----

    def mark_editing(self, session: CountingSession, item_id: int, raw_input: str) -> CountingSession:
        """Show an in-flight value for an item without committing it."""
        current = self._current(session)
        self._ensure_active(current)
        return self._update(current.id, lambda s: begin_edit(s, item_id, raw_input))

    def enter_count(
        self,
        session: CountingSession,
        item_id: int,
        raw_input: str,
        notes: Optional[str] = None,
    ) -> CountingSession:
        """Parse and commit a count for one item.

        An empty entry marks the item uncounted. Invalid input is rejected
        before any state changes. When the store fails, the entry stays
        pending and ``CountCommitError`` is raised for this item only.
        """
        current = self._current(session)
        try:
            value = parse_count_input(raw_input)
        except InvalidCountInput:
            logger.info("Rejected count input %r for item %s in session %s", raw_input, item_id, current.id)
            raise

        with self._item_lock(item_id):
            current = self._current(session)
            self._ensure_active(current)
            item = current.get_item(item_id)
            current = self._update(current.id, lambda s: begin_edit(s, item_id, raw_input))

            candidate = replace(
                item,
                actual_quantity=value,
                notes=notes if notes is not None else item.notes,
                counted_at=datetime.now(timezone.utc) if value is not None else None,
            )
            saved = self._commit_item(current, candidate)
            updated = self._update(
                current.id, lambda s: apply_count(s, item_id, saved, committed_input=raw_input)
            )

        logger.debug("Count committed: session=%s, item=%s, actual=%s", current.id, item_id, value)
        return updated

    def _commit_item(self, session: CountingSession, candidate: CountingItem) -> CountingItem:
        try:
            record = self.store.save_item(candidate.to_record(session.id))
        except CountingError:
            raise
        except Exception as exc:
            logger.exception("Failed to save count for item %s in session %s", candidate.id, session.id)
            raise CountCommitError(candidate.id, str(exc)) from exc
        return CountingItem.from_record(record)

    def add_find(
        self,
        session: CountingSession,
        item_id: int,
        quantity,
        location: Optional[str] = None,
    ) -> CountingSession:
        """Record a partial count at a location. The item's count becomes the sum of its finds."""
        current = self._current(session)
        value = parse_count_input(quantity if isinstance(quantity, str) else str(quantity))
        if value is None:
            raise InvalidCountInput(quantity)

        with self._item_lock(item_id):
            current = self._current(session)
            self._ensure_active(current)
            current.get_item(item_id)
            try:
                self.store.add_find(item_id, value, location)
            except CountingError:
                raise
            except Exception as exc:
                logger.exception("Failed to add find to item %s", item_id)
                raise CountCommitError(item_id, str(exc)) from exc
            updated = self._recount_from_finds(current, item_id)

        logger.debug("Find added: session=%s, item=%s, qty=%s, location=%s", current.id, item_id, value, location)
        return updated

    def delete_find(self, session: CountingSession, find_id: int) -> CountingSession:
        """Remove a find and recount its item. With no finds left the item is uncounted.

        Raises:
            FindNotFound: no such find, or it belongs to another session's item.
        """
        current = self._current(session)
        self._ensure_active(current)
        find = self.store.get_find(find_id)
        if find is None or find.item_id not in current.items:
            raise FindNotFound(find_id)

        with self._item_lock(find.item_id):
            try:
                self.store.delete_find(find_id)
            except CountingError:
                raise
            except Exception as exc:
                logger.exception("Failed to delete find %s", find_id)
                raise CountCommitError(find.item_id, str(exc)) from exc
            return self._recount_from_finds(self._current(session), find.item_id)

    def list_finds(self, session: CountingSession, item_id: int) -> List[FindRecord]:
        self._current(session).get_item(item_id)
        return self.store.list_finds(item_id)

    def _recount_from_finds(self, session: CountingSession, item_id: int) -> CountingSession:
        finds = self.store.list_finds(item_id)
        total = sum((f.quantity for f in finds), ZERO) if finds else None
        item = session.get_item(item_id)
        candidate = replace(
            item,
            actual_quantity=total,
            counted_at=datetime.now(timezone.utc) if total is not None else None,
        )
        saved = self._commit_item(session, candidate)
        return self._update(session.id, lambda s: apply_count(s, item_id, saved))

    # ----- reads -----

    def refresh(self, session: CountingSession) -> CountingSession:
        """Re-read the session from the store, keeping pending edits on screen."""
        current = self._current(session)
        record = self.store.get_session(current.id)
        if not record:
            raise SessionNotFound(current.id)
        records = self.store.list_items(current.id)
        if record.is_terminal:
            self._release(current)
            return session_from_records(record, records)
        return self._update(current.id, lambda s: merge_refresh(s, records, status=record.status))

    def severity(self, item: CountingItem) -> Severity:
        return self.classifier.classify(item.variance, item.variance_value, item.unit_cost)

    def calculate_summary(self, session: CountingSession) -> CountSummary:
        return calculate_summary(self._current(session))

    def find_item_by_code(self, session: CountingSession, code: str) -> Optional[CountingItem]:
        return find_item_by_code(self._current(session), code)

    def list_items(
        self,
        session: CountingSession,
        search: Optional[str] = None,
        sort_field: SortField = SortField.NAME,
        descending: bool = False,
    ) -> List[CountedItemView]:
        """Filtered, sorted count sheet rows."""
        current = self._current(session)
        rows = sort_items(
            filter_items(current.items.values(), search),
            sort_field,
            descending,
            classifier=self.classifier,
        )
        return [
            CountedItemView(
                item_id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                sku=item.sku,
                unit=item.unit,
                expected_quantity=item.expected_quantity,
                actual_quantity=item.actual_quantity,
                display_value=current.display_value(item.id),
                variance=item.variance,
                variance_value=item.variance_value,
                severity=self.severity(item),
                pending=item.id in current.pending_edits,
            )
            for item in rows
        ]

    # ----- save / complete / cancel -----

    def save_progress(self, session: CountingSession) -> CountingSession:
        """Persist summary totals without closing the session. No stock changes."""
        current = self._current(session)
        self._ensure_active(current)
        summary = calculate_summary(current)
        self.store.save_session(self._session_record(current, summary))
        logger.debug(
            "Count progress saved: session=%s, counted=%s/%s",
            current.id, summary.total_items_counted, summary.total_items,
        )
        return current

    def complete_session(self, session: CountingSession) -> CompletionResult:
        """Close the session and return the stock adjustments to apply.

        Raises:
            NothingCounted: no item has been counted.
        """
        current = self._current(session)
        self._ensure_active(current)
        summary = calculate_summary(current)
        if summary.total_items_counted == 0:
            raise NothingCounted(current.id)
        if current.pending_edits:
            logger.warning(
                "Completing session %s with %s uncommitted edit(s); committed counts are used",
                current.id, len(current.pending_edits),
            )

        self.store.save_session(self._session_record(current, summary))
        record = self.store.update_session_status(current.id, SessionStatus.COMPLETED)
        self._release(current)

        adjustments = [
            StockAdjustment(
                product_id=item.product_id,
                product_name=item.product_name,
                expected_quantity=item.expected_quantity,
                counted_quantity=item.actual_quantity,
                delta=item.variance,
                unit_cost=item.unit_cost,
                value=item.variance_value,
            )
            for item in current.counted_items()
            if item.variance
        ]

        logger.info(
            "Count session completed: ID=%s, restaurant=%s, counted=%s, adjustments=%s",
            current.id, current.restaurant_id, summary.total_items_counted, len(adjustments),
        )
        return CompletionResult(
            session_id=current.id,
            restaurant_id=current.restaurant_id,
            submitted_at=record.submitted_at or datetime.now(timezone.utc),
            summary=summary,
            adjustments=adjustments,
        )

    def requires_cancel_confirmation(self, session: CountingSession) -> bool:
        return bool(self._current(session).counted_items())

    def cancel_session(self, session: CountingSession, confirmed: bool = False) -> CountingSession:
        """Cancel the session and discard its counts. Nothing is applied to stock.

        Raises:
            CancelNotConfirmed: counted items exist and *confirmed* is false.
        """
        current = self._current(session)
        self._ensure_active(current)
        counted = len(current.counted_items())
        if counted and not confirmed:
            raise CancelNotConfirmed(current.id, counted)

        record = self.store.cancel_session(current.id)
        cleared = {
            item_id: replace(item, actual_quantity=None, notes=None, counted_at=None)
            for item_id, item in current.items.items()
        }
        updated = replace(
            current,
            status=record.status,
            items=cleared,
            input_values={item_id: "" for item_id in cleared},
            pending_edits=frozenset(),
        )
        self._release(current)

        logger.info(
            "Count session cancelled: ID=%s, restaurant=%s, discarded=%s",
            current.id, current.restaurant_id, counted,
        )
        return updated

    @staticmethod
    def _session_record(session: CountingSession, summary: CountSummary) -> SessionRecord:
        return SessionRecord(
            id=session.id,
            restaurant_id=session.restaurant_id,
            status=session.status,
            started_at=session.started_at,
            notes=session.notes,
            total_items_counted=summary.total_items_counted,
            items_with_variance=summary.items_with_variance,
            total_shrinkage_value=summary.total_shrinkage_value,
        )
