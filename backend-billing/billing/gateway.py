import logging
from typing import Dict, Optional
import stripe
from errors import InvalidPlan, UpstreamUnavailable

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Maps the plan ids the frontend knows about to Stripe price ids."""

    def __init__(self, prices: Dict[str, str]):
        self.prices = dict(prices)

    def price_for(self, plan_id: str) -> str:
        price_id = self.prices.get(plan_id)
        if not price_id:
            raise InvalidPlan(f"Unknown subscription plan: {plan_id}")
        return price_id


class StripeGateway:
    """
    Thin handle over the Stripe SDK. The API key travels with every request
    instead of being set on the global `stripe.api_key`, so tests and
    multiple configurations can coexist in one process.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    def create_customer(self, account_id: str, email: Optional[str] = None) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                metadata={"account_id": account_id},
                # Collapses concurrent first checkouts for the same account
                # into one customer within Stripe's idempotency window.
                idempotency_key=f"customer-{account_id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for {account_id}: {e}", exc_info=True)
            raise UpstreamUnavailable() from e
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: int,
        metadata: Dict[str, str],
    ):
        try:
            return stripe.checkout.Session.create(
                api_key=self.api_key,
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=metadata.get("account_id"),
                metadata=metadata,
                subscription_data={
                    "trial_period_days": trial_period_days,
                    "metadata": metadata,
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for {customer_id}: {e}", exc_info=True)
            raise UpstreamUnavailable() from e

    def create_portal_session(self, customer_id: str, return_url: str):
        try:
            return stripe.billing_portal.Session.create(
                api_key=self.api_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal session failed for {customer_id}: {e}", exc_info=True)
            raise UpstreamUnavailable() from e
