import logging
from pydantic import BaseModel
from billing.customers import CustomerDirectory
from billing.gateway import PlanCatalog, StripeGateway

logger = logging.getLogger(__name__)


class CheckoutSession(BaseModel):
    redirect_url: str
    session_id: str


class CheckoutService:
    def __init__(
        self,
        gateway: StripeGateway,
        catalog: PlanCatalog,
        directory: CustomerDirectory,
        trial_period_days: int = 14,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.directory = directory
        self.trial_period_days = trial_period_days

    def create_checkout(self, account_id: str, plan_id: str, success_url: str, cancel_url: str) -> CheckoutSession:
        """
        Opens a hosted subscription checkout for `plan_id`.

        Account state is left untouched; the subscription only becomes
        active once Stripe reports checkout.session.completed.
        """
        price_id = self.catalog.price_for(plan_id)
        customer_id = self.directory.ensure_billing_customer(account_id)

        session = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            trial_period_days=self.trial_period_days,
            metadata={"account_id": account_id, "plan": plan_id},
        )
        logger.info(f"Checkout session {session.id} opened for account {account_id} ({plan_id})")
        return CheckoutSession(redirect_url=session.url, session_id=session.id)
