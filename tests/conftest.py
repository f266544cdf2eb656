import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db
from core import config as core_config
from models.order import PaymentMethod
from models.user import User, ROLE_ADMIN
from security import jwt as jwt_utils
from security.dependencies import get_gateways
from services.esewa import EsewaGateway
from services.gateway import PaymentGateway, PaymentLookup, PaymentSession
from services.lifecycle import OrderLifecycleService


ITEMS = [
    {"product_id": "p-100", "name": "Tea Set", "price": 600, "quantity": 1, "image": "/img/tea.jpg"},
    {"product_id": "p-200", "name": "Mug", "price": 200, "quantity": 2, "image": "/img/mug.jpg"},
]

ADDRESS = {
    "street": "Durbar Marg 1",
    "city": "Kathmandu",
    "state": "Bagmati",
    "zip_code": "44600",
    "country": "Nepal",
}


class StubGateway(PaymentGateway):
    """Records calls and answers with canned sessions/lookups."""

    def __init__(self, method: PaymentMethod):
        self.method = method
        self.session = PaymentSession(
            payment_url="https://pay.test/session/PIDX-1",
            pidx="PIDX-1",
            expires_at="2030-01-01T00:00:00+05:45",
            expires_in=1800,
        )
        self.lookup = PaymentLookup(status="Completed", pidx="PIDX-1", transaction_id="T1", total_amount=100000, fee=0)
        self.error = None
        self.initiate_calls = []
        self.verify_calls = []

    def initiate(self, order, customer):
        self.initiate_calls.append(order.id)
        if self.error:
            raise self.error
        return self.session

    def verify(self, order, reference=None, reported_status=None):
        self.verify_calls.append(reference)
        if self.error:
            raise self.error
        return self.lookup


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.FRONTEND_URL = "http://frontend.test"
    core_config.settings.DEBUG = False
    core_config.settings.TESTING = True
    yield


@pytest.fixture(autouse=True)
def workflow_defaults(monkeypatch):
    monkeypatch.setattr(core_config.settings, "STRICT_STATUS_TRANSITIONS", False)
    monkeypatch.setattr(core_config.settings, "KHALTI_CONFIRM_CALLBACKS", False)


@pytest.fixture()
def db_session_override():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()

    def _get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def khalti_stub():
    return StubGateway(PaymentMethod.KHALTI)


@pytest.fixture()
def gateways(khalti_stub):
    return {
        PaymentMethod.KHALTI: khalti_stub,
        PaymentMethod.ESEWA: EsewaGateway(
            merchant_code="EPAYTEST",
            base_url="https://esewa.test",
            frontend_url="http://frontend.test",
        ),
    }


@pytest.fixture()
def client(db_session_override, gateways):
    app.dependency_overrides[get_gateways] = lambda: gateways
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def lifecycle(db_session_override, gateways):
    return OrderLifecycleService(db_session_override, core_config.settings, gateways)


def _make_user(db, name, email, role="user"):
    user = User(name=name, email=email, phone="9811111111", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def customer(db_session_override):
    return _make_user(db_session_override, "Sita Sharma", "sita@example.com")


@pytest.fixture
def other_customer(db_session_override):
    return _make_user(db_session_override, "Ram Thapa", "ram@example.com")


@pytest.fixture
def admin_user(db_session_override):
    return _make_user(db_session_override, "Store Admin", "admin@example.com", role=ROLE_ADMIN)


def _headers(user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(user.id))}"}


@pytest.fixture
def auth_headers(customer):
    return _headers(customer)


@pytest.fixture
def other_headers(other_customer):
    return _headers(other_customer)


@pytest.fixture
def admin_headers(admin_user):
    return _headers(admin_user)


@pytest.fixture
def make_order(lifecycle, customer):
    def _make(payment_method="khalti", total=1000, owner=None, items=None):
        return lifecycle.create_order(
            customer=owner or customer,
            items=ITEMS if items is None else items,
            shipping_address=ADDRESS,
            payment_method=payment_method,
            declared_total=total,
        )
    return _make


@pytest.fixture
def order_items():
    return [dict(item) for item in ITEMS]


@pytest.fixture
def shipping_address():
    return dict(ADDRESS)
