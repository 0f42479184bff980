import os
from unittest.mock import MagicMock

# 1. Set required environment variables for testing
os.environ.pop("PROJECT_ID", None)  # Skip Secret Manager
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["STRIPE_API_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PLAN_PRICES"] = '{"basic": "price_basic", "premium": "price_premium"}'
os.environ["SITE_URL"] = "https://coach.example.com"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

# Import main AFTER setting up the environment
from main import app, limiter  # noqa: E402
from database import Base, get_db  # noqa: E402
from dependencies import CurrentAccount, get_billing_gateway, get_current_account  # noqa: E402
from billing.gateway import StripeGateway  # noqa: E402


@pytest.fixture
def db_session():
    """
    Creates a new database session for a test.
    """
    # One shared in-memory connection, so the app's threadpool sees the same data
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def gateway():
    """Stripe gateway double that records calls instead of hitting the API."""
    fake = MagicMock(spec=StripeGateway)
    fake.create_customer.return_value = "cus_new"
    fake.create_checkout_session.return_value = MagicMock(
        id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1"
    )
    fake.create_portal_session.return_value = MagicMock(
        url="https://billing.stripe.com/p/session/test_1"
    )
    return fake


@pytest.fixture
def client(db_session, gateway):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    limiter.reset()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides = {}


@pytest.fixture
def mock_auth_user(client):
    """
    Overrides the get_current_account dependency to bypass auth.
    """
    app.dependency_overrides[get_current_account] = lambda: CurrentAccount(
        account_id="acct_1", email="client@example.com"
    )
    yield
    app.dependency_overrides.pop(get_current_account, None)
