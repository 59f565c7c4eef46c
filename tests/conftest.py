import os

# the app engine and the test engine share one throwaway file
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
os.environ["DATABASE_URL"] = SQLALCHEMY_DATABASE_URL
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DEFAULT_CURRENCY", "USD")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import order_service.database
from order_service.auth import require_admin, verify_token
from order_service.database import Base, get_db
from order_service.gateways import PaymentGateway, TransactionOutcome, TransactionStatus
from order_service.main import app as fastapi_app
from order_service.routes import get_gateways

# Setup test database
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

BUYER = {"id": "user123", "isAdmin": False}
ADMIN = {"id": "admin1", "isAdmin": True}


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    yield
    engine.dispose()
    order_service.database.engine.dispose()
    if os.path.exists("test_temp.db"):
        os.remove("test_temp.db")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


def make_gateway(mocker, name):
    gateway = mocker.Mock(spec=PaymentGateway)
    gateway.name = name
    return gateway


@pytest.fixture
def stripe_gateway(mocker):
    return make_gateway(mocker, "stripe")


@pytest.fixture
def paypal_gateway(mocker):
    return make_gateway(mocker, "paypal")


@pytest.fixture
def gateways(stripe_gateway, paypal_gateway):
    return {"stripe": stripe_gateway, "paypal": paypal_gateway}


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(gateways):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateways] = lambda: gateways
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: BUYER
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client):
    fastapi_app.dependency_overrides[require_admin] = lambda: ADMIN
    return client


def outcome(transaction_id, status, amount="100.00", currency="USD", raw_status=None):
    return TransactionOutcome(
        transaction_id=transaction_id,
        status=status,
        amount=Decimal(amount) if amount is not None else None,
        currency=currency,
        raw_status=raw_status or status.value,
    )


def succeeded(transaction_id, amount="100.00", currency="USD"):
    return outcome(transaction_id, TransactionStatus.SUCCEEDED, amount, currency)
