from unittest.mock import MagicMock
from sqlalchemy import update
from billing.events import WebhookVerifier
from crud import create_account
from dependencies import get_reconciler, get_webhook_verifier
from errors import UpstreamUnavailable
from main import app
from models import Account
from stripe_events import encode, invoice_paid, make_event, sign

CHECKOUT_BODY = {
    "planId": "premium",
    "successUrl": "https://coach.example.com/success",
    "cancelUrl": "https://coach.example.com/cancel",
}


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_interactive_endpoints_require_auth(client):
    assert client.post("/checkout", json=CHECKOUT_BODY).status_code == 401
    assert client.post("/billing-portal").status_code == 401

    response = client.get("/subscription-status")
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized: Missing User Identity"}


def test_checkout_endpoint_success(client, mock_auth_user, db_session, gateway):
    create_account(db_session, "acct_1", email="client@example.com")

    response = client.post("/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 200
    assert response.json() == {
        "redirectUrl": "https://checkout.stripe.com/c/pay/cs_test_1",
        "sessionId": "cs_test_1",
    }
    gateway.create_customer.assert_called_once_with("acct_1", email="client@example.com")


def test_checkout_endpoint_invalid_plan(client, mock_auth_user, db_session, gateway):
    create_account(db_session, "acct_1")

    response = client.post("/checkout", json={**CHECKOUT_BODY, "planId": "platinum"})

    assert response.status_code == 400
    assert response.json() == {"error": "Unknown subscription plan: platinum"}
    gateway.create_checkout_session.assert_not_called()


def test_checkout_endpoint_unknown_account(client, mock_auth_user):
    response = client.post("/checkout", json=CHECKOUT_BODY)
    assert response.status_code == 404
    assert response.json() == {"error": "Account not found"}


def test_checkout_endpoint_upstream_failure(client, mock_auth_user, db_session, gateway):
    create_account(db_session, "acct_1")
    gateway.create_checkout_session.side_effect = UpstreamUnavailable()

    response = client.post("/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 502
    assert response.json() == {"error": "Billing service unavailable"}


def test_checkout_endpoint_validates_body(client, mock_auth_user):
    response = client.post("/checkout", json={"planId": "premium"})
    assert response.status_code == 422


def test_billing_portal_without_customer(client, mock_auth_user, db_session, gateway):
    create_account(db_session, "acct_1")

    response = client.post("/billing-portal")

    assert response.status_code == 400
    assert response.json() == {"error": "No subscription found"}
    gateway.create_portal_session.assert_not_called()


def test_billing_portal_success(client, mock_auth_user, db_session, gateway):
    create_account(db_session, "acct_1")
    db_session.execute(update(Account).where(Account.id == "acct_1").values(stripe_customer_id="cus_1"))
    db_session.commit()

    response = client.post("/billing-portal")

    assert response.status_code == 200
    assert response.json() == {"redirectUrl": "https://billing.stripe.com/p/session/test_1"}
    gateway.create_portal_session.assert_called_once_with("cus_1", "https://coach.example.com/dashboard")


def test_subscription_status_for_new_account(client, mock_auth_user, db_session):
    create_account(db_session, "acct_1")

    response = client.get("/subscription-status")

    assert response.status_code == 200
    assert response.json() == {
        "subscription_status": None,
        "subscription_plan": None,
        "subscription_ends_at": None,
        "trial_ends_at": None,
    }


def test_webhook_rejects_missing_signature(client):
    response = client.post("/webhook", content=encode(invoice_paid()))
    assert response.status_code == 400
    assert response.json() == {"received": False}


def test_webhook_rejects_signed_event_with_bad_timestamp(client):
    body = encode(make_event("invoice.paid", {"id": "in_1", "customer": "cus_1"}, created="not-a-time"))

    response = client.post("/webhook", content=body, headers={"Stripe-Signature": sign(body)})

    assert response.status_code == 400
    assert response.json() == {"received": False}


def test_webhook_acknowledges_unresolved_account(client):
    body = encode(invoice_paid(account_id="acct_ghost", customer="cus_ghost"))

    response = client.post("/webhook", content=body, headers={"Stripe-Signature": sign(body)})

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_webhook_without_configured_secret(client):
    app.dependency_overrides[get_webhook_verifier] = lambda: WebhookVerifier("")
    body = encode(invoice_paid())

    response = client.post("/webhook", content=body, headers={"Stripe-Signature": sign(body)})

    assert response.status_code == 500
    assert response.json() == {"received": False}


def test_webhook_reconcile_failure_asks_for_redelivery(client):
    reconciler = MagicMock()
    reconciler.apply.side_effect = UpstreamUnavailable()
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    body = encode(invoice_paid())

    response = client.post("/webhook", content=body, headers={"Stripe-Signature": sign(body)})

    assert response.status_code == 500
    assert response.json() == {"received": False}
    reconciler.apply.assert_called_once()


def test_configure_tracing_instruments_app(mocker):
    from fastapi import FastAPI
    from main import configure_tracing

    exporter = mocker.patch("opentelemetry.exporter.cloud_trace.CloudTraceSpanExporter")
    instrument = mocker.patch("opentelemetry.instrumentation.fastapi.FastAPIInstrumentor.instrument_app")
    mocker.patch("opentelemetry.trace.set_tracer_provider")
    target = FastAPI()

    configure_tracing(target)

    exporter.assert_called_once()
    instrument.assert_called_once_with(target)

