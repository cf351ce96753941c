from datetime import datetime, timedelta, timezone
from typing import Generator
import pytest
from sqlalchemy.pool import StaticPool

from storefront import crud, models, payments, schemas
from storefront.config import ConfigState, get_config
from storefront.db import Base, make_engine, make_sessionmaker
from storefront.errors import GatewayError
from storefront.mail import get_mailer
from storefront.main import app, get_db

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass"
USER_PASSWORD = "secret1"


@pytest.fixture(scope="function")
def db_session() -> Generator:
    # Use in-memory SQLite with a single connection
    engine = make_engine("sqlite://", poolclass=StaticPool)
    TestingSessionLocal = make_sessionmaker(engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def test_config() -> ConfigState:
    return ConfigState(
        auth_secret="test-secret",
        gateway_secret_key="xnd_development_test",
        gateway_callback_token="callback-token",
        min_invoice_amount=1000,
        base_url="http://shop.test",
    )


class FakeGateway:
    """In-memory stand-in for the Xendit client."""

    def __init__(self):
        self.invoices: dict[str, schemas.GatewayInvoice] = {}
        self.created: list[dict] = []
        self.error: GatewayError | None = None

    def create_invoice(self, payload):
        if self.error:
            raise self.error
        self.created.append(payload)
        invoice_id = f"inv_{len(self.created)}"
        invoice = schemas.GatewayInvoice(
            id=invoice_id,
            external_id=payload["external_id"],
            status="PENDING",
            amount=payload["amount"],
            invoice_url=f"https://checkout.example/{invoice_id}",
            expiry_date=datetime.now(timezone.utc) + timedelta(days=1),
        )
        self.invoices[invoice_id] = invoice
        return invoice

    def get_invoice(self, invoice_id):
        if self.error:
            raise self.error
        return self.invoices[invoice_id]

    def set_status(self, invoice_id, status, **fields):
        invoice = self.invoices[invoice_id]
        self.invoices[invoice_id] = invoice.model_copy(update={"status": status, **fields})
        return self.invoices[invoice_id]


class CapturingMailer:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, email, token):
        self.sent.append((email, token))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mailer() -> CapturingMailer:
    return CapturingMailer()


@pytest.fixture(scope="function")
def make_client(db_session, test_config, gateway, mailer):
    # Override dependencies to use the same session, config and collaborators
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_config] = lambda: test_config
    app.dependency_overrides[payments.get_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: mailer
    from fastapi.testclient import TestClient
    clients = []

    def factory():
        c = TestClient(app)
        clients.append(c)
        return c

    yield factory
    for c in clients:
        c.close()
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def make_user(db_session):
    def factory(email, password=USER_PASSWORD, role="user"):
        return crud.create_user(db_session, email, password, role=role)
    return factory


@pytest.fixture
def make_product(db_session):
    def factory(price_cents, stock=10, name="Beras 5kg"):
        product = models.Product(name=name, price_cents=price_cents, stock=stock)
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product
    return factory


def login(client, email, password=USER_PASSWORD):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["user"]


@pytest.fixture
def admin_client(make_client, make_user):
    make_user(ADMIN_EMAIL, ADMIN_PASSWORD, role="admin")
    c = make_client()
    login(c, ADMIN_EMAIL, ADMIN_PASSWORD)
    return c
