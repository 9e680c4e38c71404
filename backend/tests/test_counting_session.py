"""Tests for count sessions: lifecycle, count entry, pending edits, finds."""

import itertools
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from stockrecon.models import InventoryTransaction, Product, ReconciliationItem, ReconciliationSession
from stockrecon.models.reconciliation import SessionStatus
from stockrecon.schemas.reconciliation import Severity
from stockrecon.services.adapters.base import (
    CatalogAdapter,
    FindRecord,
    ItemRecord,
    ProductInfo,
    SessionRecord,
    SessionStore,
)
from stockrecon.services.adapters.local import LocalStockAdjuster
from stockrecon.services.counting import (
    CountingItem,
    CountingSession,
    CountingSessionManager,
    SortField,
    abandon_edit,
    apply_count,
    begin_edit,
    calculate_summary,
    merge_refresh,
    parse_count_input,
)
from stockrecon.services.errors import (
    CancelNotConfirmed,
    CountCommitError,
    FindNotFound,
    InvalidCountInput,
    ItemNotFound,
    NothingCounted,
    SessionAlreadyActive,
    SessionNotActive,
)


def item_for(session, product):
    return next(i for i in session.items.values() if i.product_id == product.id)


# ============== In-memory collaborators ==============

class FakeCatalog(CatalogAdapter):
    def __init__(self, products):
        self.products = {p.id: p for p in products}

    def get_active_products(self, restaurant_id):
        return [p for p in self.products.values() if p.active]

    def get_product(self, product_id):
        return self.products.get(product_id)


class InMemorySessionStore(SessionStore):
    """Session store with failure injection and an optional write delay."""

    def __init__(self, delay: float = 0.0):
        self.sessions = {}
        self.items = {}
        self.finds = {}
        self.writes = []
        self.fail_items = set()
        self.fail_cancel = False
        self.delay = delay
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_session(self, restaurant_id, items, notes=None):
        with self._lock:
            for s in self.sessions.values():
                if s.restaurant_id == restaurant_id and s.status == SessionStatus.COUNTING:
                    raise SessionAlreadyActive(restaurant_id, s.id)
            session_id = next(self._ids)
            self.sessions[session_id] = SessionRecord(
                id=session_id,
                restaurant_id=restaurant_id,
                status=SessionStatus.COUNTING,
                started_at=datetime.now(timezone.utc),
                notes=notes,
            )
            for item in items:
                item_id = next(self._ids)
                self.items[item_id] = replace(item, id=item_id, session_id=session_id)
            return replace(self.sessions[session_id])

    def get_session(self, session_id):
        s = self.sessions.get(session_id)
        return replace(s) if s else None

    def get_active_session(self, restaurant_id):
        for s in self.sessions.values():
            if s.restaurant_id == restaurant_id and s.status == SessionStatus.COUNTING:
                return replace(s)
        return None

    def list_sessions(self, restaurant_id, status=None, started_from=None, started_to=None):
        return [
            replace(s) for s in self.sessions.values()
            if s.restaurant_id == restaurant_id and (status is None or s.status == status)
        ]

    def list_items(self, session_id):
        return [replace(i) for i in self.items.values() if i.session_id == session_id]

    def _check_writable(self, item_id):
        session = self.sessions[self.items[item_id].session_id]
        if session.is_terminal:
            raise SessionNotActive(session.id, session.status.value)

    def save_item(self, item):
        if item.id in self.fail_items:
            raise ConnectionError("storage unavailable")
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self._check_writable(item.id)
            self.items[item.id] = replace(
                self.items[item.id],
                actual_quantity=item.actual_quantity,
                notes=item.notes,
                counted_at=item.counted_at,
            )
            self.writes.append((item.id, item.actual_quantity))
            return replace(self.items[item.id])

    def list_finds(self, item_id):
        return [f for f in self.finds.values() if f.item_id == item_id]

    def add_find(self, item_id, quantity, location=None):
        self._check_writable(item_id)
        find = FindRecord(id=next(self._ids), item_id=item_id, quantity=quantity, location=location)
        self.finds[find.id] = find
        return find

    def get_find(self, find_id):
        return self.finds.get(find_id)

    def delete_find(self, find_id):
        if find_id not in self.finds:
            raise FindNotFound(find_id)
        self._check_writable(self.finds[find_id].item_id)
        return self.finds.pop(find_id)

    def save_session(self, session):
        stored = self.sessions[session.id]
        self.sessions[session.id] = replace(
            stored,
            notes=session.notes,
            total_items_counted=session.total_items_counted,
            items_with_variance=session.items_with_variance,
            total_shrinkage_value=session.total_shrinkage_value,
        )
        return replace(self.sessions[session.id])

    def update_session_status(self, session_id, status):
        stored = self.sessions[session_id]
        if stored.is_terminal:
            raise SessionNotActive(session_id, stored.status.value)
        self.sessions[session_id] = replace(
            stored,
            status=status,
            submitted_at=datetime.now(timezone.utc) if status == SessionStatus.COMPLETED else None,
            cancelled_at=datetime.now(timezone.utc) if status == SessionStatus.CANCELLED else None,
        )
        return replace(self.sessions[session_id])

    def cancel_session(self, session_id):
        if self.fail_cancel:
            raise ConnectionError("storage unavailable")
        stored = self.sessions[session_id]
        if stored.is_terminal:
            raise SessionNotActive(session_id, stored.status.value)
        for item_id, item in list(self.items.items()):
            if item.session_id == session_id:
                self.items[item_id] = replace(item, actual_quantity=None, notes=None, counted_at=None)
        for find_id in [f.id for f in self.finds.values() if self.items[f.item_id].session_id == session_id]:
            del self.finds[find_id]
        self.sessions[session_id] = replace(
            stored, status=SessionStatus.CANCELLED, cancelled_at=datetime.now(timezone.utc)
        )
        return replace(self.sessions[session_id])


@pytest.fixture
def fake_products():
    return [
        ProductInfo(id=i, name=f"Product {i:02d}", sku=f"SKU-{i:02d}", unit_cost=Decimal("1.50"),
                    on_hand=Decimal("10"))
        for i in range(1, 21)
    ]


@pytest.fixture
def fake_store():
    return InMemorySessionStore()


@pytest.fixture
def fake_manager(fake_store, fake_products):
    return CountingSessionManager(fake_store, FakeCatalog(fake_products))


# ============== Parsing and reducers ==============

class TestParseCountInput:
    """Count entry parsing."""

    def test_numbers(self):
        """Decimal input is accepted as typed."""
        assert parse_count_input("42") == Decimal("42")
        assert parse_count_input(" 3.25 ") == Decimal("3.25")
        assert parse_count_input("0") == Decimal("0")

    def test_empty_means_uncounted(self):
        """Blank input clears the count."""
        assert parse_count_input("") is None
        assert parse_count_input("   ") is None

    @pytest.mark.parametrize("raw", ["abc", "4,2", "NaN", "Infinity", "-1", "1e"])
    def test_rejected(self, raw):
        """Non-numbers, non-finite and negative counts are rejected."""
        with pytest.raises(InvalidCountInput) as exc_info:
            parse_count_input(raw)
        assert exc_info.value.raw_input == raw


class TestReducers:
    """Pure session reducers."""

    @pytest.fixture
    def session(self):
        items = {
            1: CountingItem(id=1, product_id=10, product_name="Flour", expected_quantity=Decimal("5")),
            2: CountingItem(id=2, product_id=11, product_name="Sugar", expected_quantity=Decimal("8")),
        }
        return CountingSession(
            id=7, restaurant_id=1, status=SessionStatus.COUNTING,
            items=items, input_values={1: "", 2: ""},
        )

    @staticmethod
    def record(item_id, product_id, name, expected, actual):
        return ItemRecord(
            id=item_id, session_id=7, product_id=product_id, product_name=name,
            expected_quantity=Decimal(expected), actual_quantity=actual,
        )

    def test_begin_edit_is_pure(self, session):
        """Reducers return a new session and leave the input untouched."""
        edited = begin_edit(session, 1, "12")
        assert edited.display_value(1) == "12"
        assert edited.pending_edits == {1}
        assert session.display_value(1) == ""
        assert session.pending_edits == frozenset()

    def test_unknown_item(self, session):
        """Items outside the snapshot are rejected."""
        with pytest.raises(ItemNotFound):
            begin_edit(session, 99, "1")

    def test_refresh_keeps_pending_value(self, session):
        """A refresh never overwrites an in-flight value but updates other items."""
        edited = begin_edit(session, 1, "12")
        refreshed = merge_refresh(edited, [
            self.record(1, 10, "Flour", "5", Decimal("3")),
            self.record(2, 11, "Sugar", "8", Decimal("6")),
        ])
        assert refreshed.display_value(1) == "12"
        assert 1 in refreshed.pending_edits
        assert refreshed.display_value(2) == "6"
        assert refreshed.items[2].actual_quantity == Decimal("6")

    def test_refresh_ignores_unknown_items(self, session):
        """The item set is fixed while counting."""
        refreshed = merge_refresh(session, [self.record(3, 12, "Salt", "1", None)])
        assert set(refreshed.items) == {1, 2}

    def test_apply_count_clears_pending(self, session):
        """A confirmed value clears the pending mark."""
        edited = begin_edit(session, 1, "12")
        committed = replace(edited.items[1], actual_quantity=Decimal("12"))
        applied = apply_count(edited, 1, committed, committed_input="12")
        assert applied.pending_edits == frozenset()
        assert applied.display_value(1) == "12"
        assert applied.items[1].variance == Decimal("7")

    def test_apply_count_keeps_newer_edit(self, session):
        """A value typed after the commit started stays pending."""
        edited = begin_edit(session, 1, "12")
        edited = begin_edit(edited, 1, "125")
        committed = replace(edited.items[1], actual_quantity=Decimal("12"))
        applied = apply_count(edited, 1, committed, committed_input="12")
        assert applied.display_value(1) == "125"
        assert 1 in applied.pending_edits
        assert applied.items[1].actual_quantity == Decimal("12")

    def test_abandon_edit(self, session):
        """Abandoning an edit shows the committed value again."""
        edited = begin_edit(session, 2, "9")
        abandoned = abandon_edit(edited, 2)
        assert abandoned.display_value(2) == ""
        assert abandoned.pending_edits == frozenset()

    def test_summary_of_uncounted_session(self, session):
        """Nothing counted: zero progress, zero values."""
        summary = calculate_summary(session)
        assert summary.total_items == 2
        assert summary.total_items_counted == 0
        assert summary.total_variance_value == 0
        assert summary.progress_percent == 0


# ============== Local database store ==============

class TestSessionLifecycle:
    """Start, complete and cancel against the local database."""

    def test_start_snapshots_active_products(self, manager, test_restaurant, test_products):
        """Every active product becomes an uncounted item at its on-hand stock."""
        session = manager.start_session(test_restaurant.id)

        assert session.status == SessionStatus.COUNTING
        assert len(session.items) == 4
        tomatoes = item_for(session, test_products["tomatoes"])
        assert tomatoes.expected_quantity == Decimal("50")
        assert tomatoes.unit_cost == Decimal("2.00")
        assert tomatoes.actual_quantity is None
        assert all(i.product_id != test_products["retired"].id for i in session.items.values())

    def test_second_start_fails(self, manager, db_session, test_restaurant, test_products):
        """Only one counting session per restaurant; the first is left untouched."""
        first = manager.start_session(test_restaurant.id)
        manager.enter_count(first, item_for(first, test_products["tomatoes"]).id, "42")

        with pytest.raises(SessionAlreadyActive) as exc_info:
            manager.start_session(test_restaurant.id)
        assert exc_info.value.existing_session_id == first.id

        reloaded = manager.open_session(first.id)
        assert reloaded.status == SessionStatus.COUNTING
        assert len(reloaded.items) == 4
        assert item_for(reloaded, test_products["tomatoes"]).actual_quantity == Decimal("42")
        assert db_session.query(ReconciliationSession).count() == 1

    def test_racing_start_hits_unique_index(
        self, manager, session_store, db_session, test_restaurant, test_products, monkeypatch
    ):
        """A start that passed the pre-check still fails on the partial unique index."""
        manager.start_session(test_restaurant.id)
        monkeypatch.setattr(session_store, "get_active_session", lambda restaurant_id: None)

        with pytest.raises(SessionAlreadyActive):
            session_store.create_session(test_restaurant.id, [])

        monkeypatch.undo()
        assert (
            db_session.query(ReconciliationSession)
            .filter(ReconciliationSession.status == SessionStatus.COUNTING)
            .count()
        ) == 1

    def test_restaurants_are_independent(self, manager, test_restaurant, other_restaurant, test_products):
        """A counting session elsewhere does not block this restaurant."""
        manager.start_session(test_restaurant.id)
        other = manager.start_session(other_restaurant.id)
        assert other.items == {}

    def test_complete_requires_counts(self, manager, test_restaurant, test_products):
        """An empty count cannot be completed."""
        session = manager.start_session(test_restaurant.id)
        with pytest.raises(NothingCounted):
            manager.complete_session(session)

    def test_complete_returns_adjustments(
        self, manager, db_session, ledger, test_restaurant, test_products, test_ledger
    ):
        """Completing closes the session and leaves stock changes to the adjuster."""
        session = manager.start_session(test_restaurant.id)
        manager.enter_count(session, item_for(session, test_products["tomatoes"]).id, "42")
        manager.enter_count(session, item_for(session, test_products["vodka"]).id, "13")
        manager.enter_count(session, item_for(session, test_products["lemons"]).id, "30")
        ledger_before = ledger.count_transactions(test_restaurant.id)

        result = manager.complete_session(session)

        assert result.summary.total_items_counted == 3
        assert {a.product_id: a.delta for a in result.adjustments} == {
            test_products["tomatoes"].id: Decimal("-8"),
            test_products["vodka"].id: Decimal("1"),
        }
        assert ledger.count_transactions(test_restaurant.id) == ledger_before
        row = db_session.get(ReconciliationSession, session.id)
        assert row.status == SessionStatus.COMPLETED
        assert row.submitted_at is not None
        assert row.total_items_counted == 3

        written = LocalStockAdjuster(db_session).apply_adjustments(
            test_restaurant.id, session.id, result.adjustments
        )
        assert written == 2
        assert ledger.count_transactions(test_restaurant.id) == ledger_before + 2
        adjustment = (
            db_session.query(InventoryTransaction)
            .filter(InventoryTransaction.reference_id == f"RECON-{session.id}",
                    InventoryTransaction.product_id == test_products["tomatoes"].id)
            .one()
        )
        assert adjustment.transaction_type == "adjustment"
        assert adjustment.quantity == Decimal("-8")
        assert db_session.get(Product, test_products["tomatoes"].id).current_stock == Decimal("42")

    def test_completed_session_is_immutable(self, manager, test_restaurant, test_products):
        """No count changes after completion."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        manager.enter_count(session, tomatoes_id, "42")
        manager.complete_session(session)

        with pytest.raises(SessionNotActive):
            manager.enter_count(session, tomatoes_id, "40")
        with pytest.raises(SessionNotActive):
            manager.cancel_session(session, confirmed=True)

    def test_cancel_requires_confirmation(self, manager, test_restaurant, test_products):
        """Cancelling with counted items must be confirmed."""
        session = manager.start_session(test_restaurant.id)
        assert not manager.requires_cancel_confirmation(session)
        manager.enter_count(session, item_for(session, test_products["tomatoes"]).id, "42")
        assert manager.requires_cancel_confirmation(session)

        with pytest.raises(CancelNotConfirmed) as exc_info:
            manager.cancel_session(session)
        assert exc_info.value.counted_items == 1
        assert manager.open_session(session.id).status == SessionStatus.COUNTING

    def test_cancel_writes_nothing_to_ledger(
        self, manager, db_session, ledger, test_restaurant, test_products, test_ledger
    ):
        """Cancelling discards counts and leaves ledger and stock untouched."""
        session = manager.start_session(test_restaurant.id)
        for key, raw in (("tomatoes", "42"), ("vodka", "3"), ("rice", "25")):
            manager.enter_count(session, item_for(session, test_products[key]).id, raw)
        ledger_before = ledger.count_transactions(test_restaurant.id)

        cancelled = manager.cancel_session(session, confirmed=True)

        assert cancelled.status == SessionStatus.CANCELLED
        assert ledger.count_transactions(test_restaurant.id) == ledger_before
        items = db_session.query(ReconciliationItem).filter(ReconciliationItem.session_id == session.id).all()
        assert all(i.actual_quantity is None for i in items)
        assert db_session.get(Product, test_products["tomatoes"].id).current_stock == Decimal("50")
        assert manager.get_active_session(test_restaurant.id) is None

    def test_failed_cancel_keeps_counts(
        self, manager, db_session, test_restaurant, test_products, monkeypatch
    ):
        """When the cancel cannot be stored, counts and status are both kept."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        manager.enter_count(session, tomatoes_id, "42")

        def locked_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", locked_commit)
        with pytest.raises(OperationalError):
            manager.cancel_session(session, confirmed=True)
        monkeypatch.undo()

        assert db_session.get(ReconciliationSession, session.id).status == SessionStatus.COUNTING
        assert db_session.get(ReconciliationItem, tomatoes_id).actual_quantity == Decimal("42")
        current = manager.get_active_session(test_restaurant.id)
        assert current.items[tomatoes_id].actual_quantity == Decimal("42")

    def test_cancel_without_counts_needs_no_confirmation(self, manager, test_restaurant, test_products):
        """An untouched session cancels directly."""
        session = manager.start_session(test_restaurant.id)
        assert manager.cancel_session(session).status == SessionStatus.CANCELLED
        # A new count can start afterwards
        assert manager.start_session(test_restaurant.id).status == SessionStatus.COUNTING


class TestCountEntry:
    """Count entry, summary and progress against the local database."""

    def test_enter_count(self, manager, db_session, test_restaurant, test_products):
        """A count is persisted and its variance derived."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id

        session = manager.enter_count(session, tomatoes_id, "42", notes="Two crates bruised")

        item = session.items[tomatoes_id]
        assert item.variance == Decimal("-8")
        assert item.variance_value == Decimal("-16")
        assert manager.severity(item) == Severity.CAUTION
        assert session.display_value(tomatoes_id) == "42"
        assert tomatoes_id not in session.pending_edits

        row = db_session.get(ReconciliationItem, tomatoes_id)
        assert row.actual_quantity == Decimal("42")
        assert row.notes == "Two crates bruised"
        assert row.counted_at is not None

    def test_clear_count(self, manager, db_session, test_restaurant, test_products):
        """An empty entry makes the item uncounted again."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        manager.enter_count(session, tomatoes_id, "42")

        session = manager.enter_count(session, tomatoes_id, "")

        assert session.items[tomatoes_id].actual_quantity is None
        assert session.items[tomatoes_id].variance is None
        assert manager.severity(session.items[tomatoes_id]) == Severity.NOT_COUNTED
        assert db_session.get(ReconciliationItem, tomatoes_id).counted_at is None

    def test_invalid_input_changes_nothing(self, manager, db_session, test_restaurant, test_products):
        """Rejected input leaves display, pending marks and storage unchanged."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        session = manager.enter_count(session, tomatoes_id, "42")

        with pytest.raises(InvalidCountInput):
            manager.enter_count(session, tomatoes_id, "forty")

        current = manager.open_session(session.id)
        assert current.items[tomatoes_id].actual_quantity == Decimal("42")
        assert db_session.get(ReconciliationItem, tomatoes_id).actual_quantity == Decimal("42")

    def test_unknown_item(self, manager, test_restaurant, test_products):
        """Items must belong to the session."""
        session = manager.start_session(test_restaurant.id)
        with pytest.raises(ItemNotFound):
            manager.enter_count(session, 9999, "1")

    def test_summary(self, manager, test_restaurant, test_products):
        """Summary counts, variance value, net shrinkage and progress."""
        session = manager.start_session(test_restaurant.id)
        manager.enter_count(session, item_for(session, test_products["tomatoes"]).id, "42")
        manager.enter_count(session, item_for(session, test_products["vodka"]).id, "13")
        manager.enter_count(session, item_for(session, test_products["lemons"]).id, "30")

        summary = manager.calculate_summary(session)

        assert summary.total_items == 4
        assert summary.total_items_counted == 3
        assert summary.items_with_variance == 2
        assert summary.total_variance_value == Decimal("4")
        assert summary.total_overage_value == Decimal("20")
        assert summary.total_shrinkage_value == Decimal("-4")
        assert summary.progress_percent == Decimal("75")

    def test_save_progress(self, manager, db_session, ledger, test_restaurant, test_products):
        """Saving progress stores totals, keeps counting and touches no stock."""
        session = manager.start_session(test_restaurant.id)
        manager.enter_count(session, item_for(session, test_products["tomatoes"]).id, "42")
        ledger_before = ledger.count_transactions(test_restaurant.id)

        manager.save_progress(session)
        manager.save_progress(session)

        row = db_session.get(ReconciliationSession, session.id)
        assert row.status == SessionStatus.COUNTING
        assert row.total_items_counted == 1
        assert row.total_shrinkage_value == Decimal("16")
        assert ledger.count_transactions(test_restaurant.id) == ledger_before

    def test_refresh_protects_pending_edit(self, manager, session_store, test_restaurant, test_products):
        """A background refresh keeps a half-typed value but updates other items."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        vodka_id = item_for(session, test_products["vodka"]).id
        manager.mark_editing(session, tomatoes_id, "12")

        # Another device commits counts for both items
        for record in session_store.list_items(session.id):
            if record.id == tomatoes_id:
                session_store.save_item(replace(record, actual_quantity=Decimal("99")))
            elif record.id == vodka_id:
                session_store.save_item(replace(record, actual_quantity=Decimal("7")))

        refreshed = manager.refresh(session)

        assert refreshed.display_value(tomatoes_id) == "12"
        assert tomatoes_id in refreshed.pending_edits
        assert refreshed.display_value(vodka_id) == "7"
        assert refreshed.items[vodka_id].actual_quantity == Decimal("7")

        committed = manager.enter_count(refreshed, tomatoes_id, "12")
        assert committed.display_value(tomatoes_id) == "12"
        assert committed.items[tomatoes_id].actual_quantity == Decimal("12")
        assert tomatoes_id not in committed.pending_edits


class TestFindsAndLookup:
    """Per-location finds, code lookup, filter and sort."""

    def test_finds_sum_into_count(self, manager, test_restaurant, test_products):
        """The item's count is the sum of its finds."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id

        manager.add_find(session, tomatoes_id, Decimal("5"), "Walk-in")
        session = manager.add_find(session, tomatoes_id, "3", "Bar")
        assert session.items[tomatoes_id].actual_quantity == Decimal("8")

        finds = manager.list_finds(session, tomatoes_id)
        assert [f.location for f in finds] == ["Walk-in", "Bar"]

        session = manager.delete_find(session, finds[0].id)
        assert session.items[tomatoes_id].actual_quantity == Decimal("3")

        session = manager.delete_find(session, finds[1].id)
        assert session.items[tomatoes_id].actual_quantity is None
        assert session.items[tomatoes_id].counted_at is None

    def test_find_validation(self, manager, test_restaurant, test_products):
        """Finds use the same validation as count entry."""
        session = manager.start_session(test_restaurant.id)
        tomatoes_id = item_for(session, test_products["tomatoes"]).id
        with pytest.raises(InvalidCountInput):
            manager.add_find(session, tomatoes_id, "lots")
        with pytest.raises(InvalidCountInput):
            manager.add_find(session, tomatoes_id, "")
        with pytest.raises(FindNotFound):
            manager.delete_find(session, 12345)

    def test_find_of_another_session_is_untouched(
        self, manager, db_session, test_restaurant, other_restaurant, test_products
    ):
        """A session cannot delete a find recorded on another restaurant's count."""
        db_session.add(Product(restaurant_id=other_restaurant.id, name="Limes", current_stock=Decimal("10")))
        db_session.commit()
        theirs = manager.start_session(other_restaurant.id)
        (their_item_id,) = theirs.items
        manager.add_find(theirs, their_item_id, "7", "Bar")
        find = manager.list_finds(theirs, their_item_id)[0]
        mine = manager.start_session(test_restaurant.id)

        with pytest.raises(FindNotFound):
            manager.delete_find(mine, find.id)

        assert len(manager.list_finds(theirs, their_item_id)) == 1
        assert manager.open_session(theirs.id).items[their_item_id].actual_quantity == Decimal("7")

    def test_find_item_by_code(self, manager, test_restaurant, test_products):
        """SKU and barcode match exactly, ignoring case."""
        session = manager.start_session(test_restaurant.id)
        assert manager.find_item_by_code(session, "tom-001").product_id == test_products["tomatoes"].id
        assert manager.find_item_by_code(session, "4000000000028").product_id == test_products["vodka"].id
        assert manager.find_item_by_code(session, "TOM") is None

    def test_filter(self, manager, test_restaurant, test_products):
        """Free text matches product name or SKU."""
        session = manager.start_session(test_restaurant.id)
        assert [r.product_name for r in manager.list_items(session, search="vod")] == ["Vodka"]
        assert [r.product_name for r in manager.list_items(session, search="lem-")] == ["Lemons"]
        assert manager.list_items(session, search="caviar") == []

    def test_sort_nulls_first(self, manager, test_restaurant, test_products):
        """Uncounted items lead in both directions."""
        session = manager.start_session(test_restaurant.id)
        manager.enter_count(session, item_for(session, test_products["tomatoes"]).id, "42")
        manager.enter_count(session, item_for(session, test_products["vodka"]).id, "13")

        ascending = manager.list_items(session, sort_field=SortField.ACTUAL)
        descending = manager.list_items(session, sort_field=SortField.ACTUAL, descending=True)

        assert [r.product_name for r in ascending] == ["Jasmine Rice", "Lemons", "Vodka", "Tomatoes"]
        assert [r.product_name for r in descending] == ["Jasmine Rice", "Lemons", "Tomatoes", "Vodka"]

    def test_sort_by_name_and_status(self, manager, test_restaurant, test_products):
        """Name sort is alphabetical; status sort puts uncounted first."""
        session = manager.start_session(test_restaurant.id)
        manager.enter_count(session, item_for(session, test_products["rice"]).id, "20")
        manager.enter_count(session, item_for(session, test_products["lemons"]).id, "5")

        by_name = manager.list_items(session, sort_field=SortField.NAME)
        assert [r.product_name for r in by_name] == ["Jasmine Rice", "Lemons", "Tomatoes", "Vodka"]

        by_status = manager.list_items(session, sort_field=SortField.STATUS, descending=True)
        assert [r.severity for r in by_status] == [
            Severity.NOT_COUNTED, Severity.NOT_COUNTED, Severity.ALERT, Severity.OK,
        ]


# ============== Failure injection and concurrency ==============

class TestStoreFailures:
    """A failed write is scoped to its item."""

    def test_failed_commit_stays_pending(self, fake_manager, fake_store):
        """The failed item keeps its typed value; other items are unaffected."""
        session = fake_manager.start_session(1)
        failing_id, healthy_id = sorted(session.items)[:2]
        fake_store.fail_items.add(failing_id)

        with pytest.raises(CountCommitError) as exc_info:
            fake_manager.enter_count(session, failing_id, "12")
        assert isinstance(exc_info.value.__cause__, ConnectionError)

        session = fake_manager.enter_count(session, healthy_id, "9")
        assert session.display_value(failing_id) == "12"
        assert failing_id in session.pending_edits
        assert session.items[failing_id].actual_quantity is None
        assert session.items[healthy_id].actual_quantity == Decimal("9")

        refreshed = fake_manager.refresh(session)
        assert refreshed.display_value(failing_id) == "12"

        fake_store.fail_items.clear()
        session = fake_manager.enter_count(session, failing_id, "12")
        assert failing_id not in session.pending_edits
        assert session.items[failing_id].actual_quantity == Decimal("12")

    def test_cancel_guarantee_with_fake_store(self, fake_manager, fake_store):
        """Cancel discards counts in storage."""
        session = fake_manager.start_session(1)
        for item_id in list(session.items)[:5]:
            fake_manager.enter_count(session, item_id, "4")

        fake_manager.cancel_session(session, confirmed=True)

        assert all(i.actual_quantity is None for i in fake_store.items.values())
        assert fake_store.get_session(session.id).status == SessionStatus.CANCELLED


    def test_failed_cancel_is_atomic(self, fake_manager, fake_store):
        """A failed cancel leaves the session counting with its counts."""
        session = fake_manager.start_session(1)
        counted = sorted(session.items)[:3]
        for item_id in counted:
            fake_manager.enter_count(session, item_id, "4")
        fake_store.fail_cancel = True

        with pytest.raises(ConnectionError):
            fake_manager.cancel_session(session, confirmed=True)

        assert fake_store.get_session(session.id).status == SessionStatus.COUNTING
        assert [fake_store.items[i].actual_quantity for i in counted] == [Decimal("4")] * 3
        assert len(fake_manager.get_active_session(1).counted_items()) == 3

        fake_store.fail_cancel = False
        assert fake_manager.cancel_session(session, confirmed=True).status == SessionStatus.CANCELLED

    def test_closed_sessions_are_released(self, fake_manager):
        """Completed and cancelled sessions drop their tracked state and item locks."""
        completed = fake_manager.start_session(1)
        first_id = min(completed.items)
        fake_manager.enter_count(completed, first_id, "4")
        fake_manager.complete_session(completed)
        cancelled = fake_manager.start_session(2)
        fake_manager.cancel_session(cancelled)

        assert fake_manager._sessions == {}
        assert not (set(completed.items) | set(cancelled.items)) & set(fake_manager._item_locks)

        with pytest.raises(SessionNotActive):
            fake_manager.enter_count(completed, first_id, "5")
        assert fake_manager.refresh(completed).status == SessionStatus.COMPLETED
        assert fake_manager._sessions == {}

class TestConcurrentEntry:
    """Concurrent count entry."""

    def test_different_items_in_parallel(self, fake_products):
        """Parallel entries on different items all commit."""
        store = InMemorySessionStore(delay=0.001)
        manager = CountingSessionManager(store, FakeCatalog(fake_products))
        session = manager.start_session(1)
        item_ids = sorted(session.items)

        threads = [
            threading.Thread(target=manager.enter_count, args=(session, item_id, str(n)))
            for n, item_id in enumerate(item_ids)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        current = manager.refresh(session)
        for n, item_id in enumerate(item_ids):
            assert current.items[item_id].actual_quantity == Decimal(n)
        assert current.pending_edits == frozenset()
        assert manager.calculate_summary(current).total_items_counted == len(item_ids)

    def test_same_item_is_serialized(self, fake_products):
        """Entries on one item never interleave; the last write wins everywhere."""
        store = InMemorySessionStore(delay=0.001)
        manager = CountingSessionManager(store, FakeCatalog(fake_products))
        session = manager.start_session(1)
        item_id = min(session.items)

        threads = [
            threading.Thread(target=manager.enter_count, args=(session, item_id, str(v)))
            for v in range(1, 11)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        last_written = store.writes[-1][1]
        current = manager.get_active_session(1)
        assert len(store.writes) == 10
        assert current.items[item_id].actual_quantity == last_written
        assert store.items[item_id].actual_quantity == last_written
        assert current.display_value(item_id) == str(last_written)
        assert item_id not in current.pending_edits
