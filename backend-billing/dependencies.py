from typing import Optional
from fastapi import Depends, Header
import firebase_admin
from firebase_admin import auth
import logging
from pydantic import BaseModel
from sqlalchemy.orm import Session
from database import get_db
from config import settings
from errors import Unauthorized
from billing.checkout import CheckoutService
from billing.customers import CustomerDirectory
from billing.events import WebhookVerifier
from billing.gateway import PlanCatalog, StripeGateway
from billing.portal import PortalService
from billing.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

# Initialize Firebase Admin SDK
# Use Application Default Credentials (ADC) which works automatically on Cloud Run
try:
    firebase_admin.get_app()
except ValueError:
    firebase_admin.initialize_app()


class CurrentAccount(BaseModel):
    account_id: str
    role: str = "customer"
    email: Optional[str] = None


def get_current_account(authorization: Optional[str] = Header(None)) -> CurrentAccount:
    """
    Resolves the caller from an `Authorization: Bearer <Firebase ID token>` header.
    """
    if not authorization:
        logger.warning("Missing Authorization header")
        raise Unauthorized("Unauthorized: Missing User Identity")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Unauthorized: Bearer token required")

    try:
        decoded_token = auth.verify_id_token(token, check_revoked=True)
    except auth.RevokedIdTokenError:
        logger.warning("Firebase token revoked")
        raise Unauthorized("Unauthorized: Token Revoked")
    except auth.ExpiredIdTokenError:
        logger.warning("Firebase token expired")
        raise Unauthorized("Unauthorized: Token Expired")
    except Exception as e:
        logger.error(f"Firebase token validation error: {e}")
        raise Unauthorized("Unauthorized: Invalid Token")

    account_id = decoded_token.get("uid")
    if not account_id:
        raise Unauthorized("Unauthorized: Token missing uid")

    return CurrentAccount(
        account_id=account_id,
        role=decoded_token.get("role", "customer"),
        email=decoded_token.get("email"),
    )


# --- Collaborator handles ---

def get_billing_gateway() -> StripeGateway:
    return StripeGateway(api_key=settings.STRIPE_API_KEY)


def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog(settings.PLAN_PRICES)


def get_webhook_verifier() -> WebhookVerifier:
    return WebhookVerifier(settings.STRIPE_WEBHOOK_SECRET, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE)


def get_checkout_service(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> CheckoutService:
    return CheckoutService(
        gateway=gateway,
        catalog=catalog,
        directory=CustomerDirectory(db, gateway),
        trial_period_days=settings.TRIAL_PERIOD_DAYS,
    )


def get_portal_service(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
) -> PortalService:
    return PortalService(db, gateway, return_url=settings.portal_return_url)


def get_reconciler(db: Session = Depends(get_db)) -> SubscriptionReconciler:
    return SubscriptionReconciler(db, trial_period_days=settings.TRIAL_PERIOD_DAYS)
