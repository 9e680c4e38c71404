"""Pytest configuration and fixtures."""

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stockrecon.db.base import Base
# Import all models to ensure they're registered with Base.metadata
from stockrecon.models import *
from stockrecon.services.adapters.local import (
    LocalCatalog,
    LocalLedger,
    LocalRecipeCatalog,
    LocalSalesFeed,
    LocalSessionStore,
)
from stockrecon.services.counting import CountingSessionManager

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

TODAY = date(2025, 3, 15)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_restaurant(db_session: Session) -> Restaurant:
    """Create a test restaurant."""
    restaurant = Restaurant(name="Test Bistro", active=True)
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def other_restaurant(db_session: Session) -> Restaurant:
    """Create a second restaurant."""
    restaurant = Restaurant(name="Other Bistro", active=True)
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def test_products(db_session: Session, test_restaurant: Restaurant) -> dict:
    """Create a small catalog keyed by short name."""
    products = {
        "tomatoes": Product(
            restaurant_id=test_restaurant.id,
            name="Tomatoes",
            sku="TOM-001",
            barcode="4000000000011",
            uom_purchase="each",
            cost_per_unit=Decimal("2.00"),
            current_stock=Decimal("50"),
        ),
        "vodka": Product(
            restaurant_id=test_restaurant.id,
            name="Vodka",
            sku="VOD-750",
            barcode="4000000000028",
            uom_purchase="bottle",
            cost_per_unit=Decimal("20.00"),
            current_stock=Decimal("12"),
            size_value=Decimal("750"),
            size_unit="ml",
        ),
        "rice": Product(
            restaurant_id=test_restaurant.id,
            name="Jasmine Rice",
            sku="RICE-25",
            uom_purchase="kg",
            cost_per_unit=Decimal("3.00"),
            current_stock=Decimal("20"),
        ),
        "lemons": Product(
            restaurant_id=test_restaurant.id,
            name="Lemons",
            sku="LEM-001",
            uom_purchase="each",
            cost_per_unit=None,
            current_stock=Decimal("30"),
        ),
        "retired": Product(
            restaurant_id=test_restaurant.id,
            name="Retired Syrup",
            sku="SYR-OLD",
            uom_purchase="bottle",
            cost_per_unit=Decimal("5.00"),
            current_stock=Decimal("3"),
            active=False,
        ),
    }
    db_session.add_all(products.values())
    db_session.commit()
    for product in products.values():
        db_session.refresh(product)
    return products


@pytest.fixture
def test_recipes(db_session: Session, test_restaurant: Restaurant, test_products: dict) -> dict:
    """Create recipes mapped to POS item names."""
    martini = Recipe(restaurant_id=test_restaurant.id, name="Vodka Martini", pos_item_name="Martini")
    martini.ingredients = [
        RecipeIngredient(product_id=test_products["vodka"].id, quantity=Decimal("1.5"), unit="oz"),
        RecipeIngredient(product_id=test_products["lemons"].id, quantity=Decimal("0.5"), unit="each"),
    ]
    salad = Recipe(restaurant_id=test_restaurant.id, name="Tomato Salad", pos_item_name="Tomato Salad")
    salad.ingredients = [
        RecipeIngredient(product_id=test_products["tomatoes"].id, quantity=Decimal("2"), unit="each"),
    ]
    rice_bowl = Recipe(restaurant_id=test_restaurant.id, name="Rice Bowl", pos_item_name="Rice Bowl")
    rice_bowl.ingredients = [
        RecipeIngredient(product_id=test_products["rice"].id, quantity=Decimal("250"), unit="g"),
    ]
    retired = Recipe(
        restaurant_id=test_restaurant.id, name="Old Special", pos_item_name="Old Special", is_active=False
    )
    retired.ingredients = [
        RecipeIngredient(product_id=test_products["tomatoes"].id, quantity=Decimal("5"), unit="each"),
    ]
    recipes = {"martini": martini, "salad": salad, "rice_bowl": rice_bowl, "retired": retired}
    db_session.add_all(recipes.values())
    db_session.commit()
    return recipes


@pytest.fixture
def test_sales(db_session: Session, test_restaurant: Restaurant, test_recipes: dict) -> list:
    """POS sales inside and outside the trailing week ending TODAY."""
    sales = [
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Martini", quantity=Decimal("10"),
                sale_date=TODAY - timedelta(days=1)),
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Tomato Salad", quantity=Decimal("5"),
                sale_date=TODAY - timedelta(days=2)),
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Tomato Salad", quantity=Decimal("5"),
                sale_date=TODAY),
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Rice Bowl", quantity=Decimal("4"),
                sale_date=TODAY - timedelta(days=3)),
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Mystery Burger", quantity=Decimal("3"),
                sale_date=TODAY - timedelta(days=1)),
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Old Special", quantity=Decimal("2"),
                sale_date=TODAY - timedelta(days=1)),
        # Outside the window
        PosSale(restaurant_id=test_restaurant.id, pos_item_name="Tomato Salad", quantity=Decimal("100"),
                sale_date=TODAY - timedelta(days=30)),
    ]
    db_session.add_all(sales)
    db_session.commit()
    return sales


def _ledger(restaurant_id, product_id, quantity, days_ago, unit_cost=None, transaction_type="sale_deduction"):
    return InventoryTransaction(
        restaurant_id=restaurant_id,
        product_id=product_id,
        quantity=Decimal(quantity),
        unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
        transaction_type=transaction_type,
        created_at=datetime.combine(TODAY - timedelta(days=days_ago), datetime.min.time()) + timedelta(hours=12),
    )


@pytest.fixture
def test_ledger(db_session: Session, test_restaurant: Restaurant, test_products: dict) -> list:
    """Ledger entries for the trailing week ending TODAY."""
    rid = test_restaurant.id
    entries = [
        # Tomatoes: theoretical 20, actual 24
        _ledger(rid, test_products["tomatoes"].id, "-10", 2, unit_cost="2.00"),
        _ledger(rid, test_products["tomatoes"].id, "-14", 0, unit_cost="2.50"),
        # Rice: theoretical 1 kg, actual 1 kg
        _ledger(rid, test_products["rice"].id, "-1", 3, unit_cost="3.00"),
        # Receipts are not usage
        _ledger(rid, test_products["tomatoes"].id, "40", 4, unit_cost="2.20", transaction_type="purchase"),
        # Outside the window
        _ledger(rid, test_products["tomatoes"].id, "-200", 30, unit_cost="1.00"),
    ]
    db_session.add_all(entries)
    db_session.commit()
    return entries


@pytest.fixture
def session_store(db_session: Session) -> LocalSessionStore:
    return LocalSessionStore(db_session)


@pytest.fixture
def catalog(db_session: Session) -> LocalCatalog:
    return LocalCatalog(db_session)


@pytest.fixture
def ledger(db_session: Session) -> LocalLedger:
    return LocalLedger(db_session)


@pytest.fixture
def recipe_catalog(db_session: Session) -> LocalRecipeCatalog:
    return LocalRecipeCatalog(db_session)


@pytest.fixture
def sales_feed(db_session: Session) -> LocalSalesFeed:
    return LocalSalesFeed(db_session)


@pytest.fixture
def manager(session_store, catalog) -> CountingSessionManager:
    """Counting session manager over the local database."""
    return CountingSessionManager(session_store, catalog)
