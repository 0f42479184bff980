from sqlalchemy import update
from sqlalchemy.orm import Session
from models import Account, PaymentRecord
import logging

logger = logging.getLogger(__name__)


def get_account(db: Session, account_id: str):
    return db.query(Account).filter(Account.id == account_id).first()


def get_account_by_customer_id(db: Session, stripe_customer_id: str):
    return db.query(Account).filter(Account.stripe_customer_id == stripe_customer_id).first()


def create_account(db: Session, account_id: str, email: str = None, role: str = "customer"):
    db_account = Account(id=account_id, email=email, role=role)
    db.add(db_account)
    db.commit()
    db.refresh(db_account)
    return db_account


def assign_billing_customer(db: Session, account_id: str, stripe_customer_id: str) -> str:
    """
    Stores the customer reference only if the account has none yet and returns
    whichever reference is persisted afterwards.
    """
    db.execute(
        update(Account)
        .where(Account.id == account_id, Account.stripe_customer_id.is_(None))
        .values(stripe_customer_id=stripe_customer_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return db.query(Account.stripe_customer_id).filter(Account.id == account_id).scalar()


def get_payment_by_invoice(db: Session, stripe_invoice_id: str):
    return db.query(PaymentRecord).filter(PaymentRecord.stripe_invoice_id == stripe_invoice_id).first()


def list_payments(db: Session, account_id: str):
    return (
        db.query(PaymentRecord)
        .filter(PaymentRecord.account_id == account_id)
        .order_by(PaymentRecord.id)
        .all()
    )
