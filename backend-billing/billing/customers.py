import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import crud
from billing.gateway import StripeGateway
from errors import AccountNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)


class CustomerDirectory:
    def __init__(self, db: Session, gateway: StripeGateway):
        self.db = db
        self.gateway = gateway

    def ensure_billing_customer(self, account_id: str) -> str:
        """
        Returns the account's Stripe customer id, creating the customer on
        first use. The persisted reference is the source of truth: if a
        concurrent call stored one first, that one is returned.
        """
        try:
            account = crud.get_account(self.db, account_id)
        except SQLAlchemyError as e:
            logger.error("Account lookup failed", exc_info=True)
            raise UpstreamUnavailable() from e

        if not account:
            raise AccountNotFound()
        if account.stripe_customer_id:
            return account.stripe_customer_id

        created_id = self.gateway.create_customer(account_id, email=account.email)

        try:
            persisted_id = crud.assign_billing_customer(self.db, account_id, created_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not persist customer {created_id} for {account_id}", exc_info=True)
            raise UpstreamUnavailable() from e

        if persisted_id != created_id:
            logger.warning(
                f"Account {account_id} already bound to {persisted_id}; "
                f"Stripe customer {created_id} is an orphan"
            )
        else:
            logger.info(f"Created Stripe customer {created_id} for account {account_id}")
        return persisted_id
