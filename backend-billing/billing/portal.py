import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import crud
from billing.gateway import StripeGateway
from errors import AccountNotFound, NoBillingCustomer, UpstreamUnavailable

logger = logging.getLogger(__name__)


class PortalService:
    def __init__(self, db: Session, gateway: StripeGateway, return_url: str):
        self.db = db
        self.gateway = gateway
        self.return_url = return_url

    def create_portal_session(self, account_id: str) -> str:
        try:
            account = crud.get_account(self.db, account_id)
        except SQLAlchemyError as e:
            logger.error("Account lookup failed", exc_info=True)
            raise UpstreamUnavailable() from e

        if not account:
            raise AccountNotFound()
        if not account.stripe_customer_id:
            raise NoBillingCustomer()

        session = self.gateway.create_portal_session(account.stripe_customer_id, self.return_url)
        return session.url
