"""
Shared fixtures: an in-memory SQLite database per test, a fake menu catalog
and a fake payment processor standing in for the external services.
"""
import os

# must be set before fulfillment_service.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("KAFKA_ENABLED", "false")

from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment_service.catalog import Coupon, MenuCatalog, MenuEntry
from fulfillment_service.coordinator import FulfillmentCoordinator
from fulfillment_service.database import Base, get_db, make_engine
from fulfillment_service.errors import ProcessorDeclinedError, ProcessorUnavailableError
from fulfillment_service.main import app, get_catalog, get_processor
from fulfillment_service.processor import PaymentProcessor, ProcessorResult
from fulfillment_service.statuses import OrderType


# ============================================================================
# Fakes
# ============================================================================

class FakeCatalog(MenuCatalog):
    def __init__(self):
        self.entries: Dict[str, MenuEntry] = {
            "margherita": MenuEntry(
                "margherita", "Margherita",
                {"small": Decimal("500"), "medium": Decimal("800"), "large": Decimal("1100")},
            ),
            "pepperoni": MenuEntry(
                "pepperoni", "Pepperoni", {"medium": Decimal("950"), "large": Decimal("1300")},
            ),
            "bbq-chicken": MenuEntry("bbq-chicken", "BBQ Chicken", {"large": Decimal("1000")}),
            "garlic-bread": MenuEntry("garlic-bread", "Garlic Bread", {"regular": Decimal("250")}),
            "seasonal": MenuEntry("seasonal", "Seasonal Special", {"large": Decimal("1500")}, is_available=False),
            "freebie": MenuEntry("freebie", "Freebie", {"small": Decimal("0")}),
        }
        self.coupons: Dict[str, Coupon] = {
            "SAVE10": Coupon("SAVE10", "percentage", Decimal("10"), max_discount=Decimal("150")),
            "FLAT200": Coupon("FLAT200", "fixed", Decimal("200"), min_order_amount=Decimal("1000")),
        }

    def get_menu_entry(self, menu_id: str) -> Optional[MenuEntry]:
        return self.entries.get(menu_id)

    def verify_coupon(self, code: str, branch_id: Optional[str]) -> Optional[Coupon]:
        return self.coupons.get(code.upper())


class FakeProcessor(PaymentProcessor):
    """Records calls; ``fail`` makes every call unavailable, ``decline`` declines."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.decline = False

    def _call(self, kind, payment, amount=None):
        if self.fail:
            raise ProcessorUnavailableError("Payment processor unavailable: timeout")
        if self.decline:
            raise ProcessorDeclinedError("Processor declined")
        self.calls.append((kind, payment.id, amount))
        return ProcessorResult(reference=f"pi_{payment.id}", status="ok")

    def create_intent(self, payment):
        return self._call("intent", payment)

    def refund(self, payment, amount):
        return self._call("refund", payment, amount)

    def void(self, payment):
        return self._call("void", payment)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database so separate sessions get separate connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'fulfillment.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def coordinator(db, catalog, processor):
    return FulfillmentCoordinator(db, catalog, processor)


# ============================================================================
# Builders
# ============================================================================

DEFAULT_ITEMS = [{"menu_id": "margherita", "size": "medium", "quantity": 1}]


def order_request(order_type=OrderType.DELIVERY, items=None, coupon_code=None, address="12 Main St"):
    return SimpleNamespace(
        branch_id="branch-1",
        customer_info=SimpleNamespace(
            name="Ayesha", phone="03001234567", email=None, address=address,
        ),
        items=[SimpleNamespace(**i) for i in (DEFAULT_ITEMS if items is None else items)],
        order_type=order_type,
        coupon_code=coupon_code,
        special_instructions=None,
    )


def rider_request(name="Bilal", phone="03110000001", branch_id="branch-1"):
    return SimpleNamespace(
        name=name,
        phone=phone,
        email=None,
        vehicle_type="Bike",
        vehicle_number="LEA-1234",
        branch_id=branch_id,
    )


@pytest.fixture
def make_order(coordinator):
    def _make(order_type=OrderType.DELIVERY, **kwargs):
        return coordinator.place_order(order_request(order_type, **kwargs), actor="tester")
    return _make


@pytest.fixture
def make_rider(coordinator):
    counter = iter(range(1, 1000))

    def _make(**kwargs):
        kwargs.setdefault("phone", f"0311{next(counter):07d}")
        return coordinator.register_rider(rider_request(**kwargs))
    return _make


# ============================================================================
# API client
# ============================================================================

@pytest.fixture
def client(session_factory, catalog, processor):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_processor] = lambda: processor
    # not entered as a context manager: the lifespan would reach for MySQL and Kafka
    yield TestClient(app)
    app.dependency_overrides.clear()
