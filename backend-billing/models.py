from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base

SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "cancelled")
PAYMENT_STATUSES = ("succeeded", "failed")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True)
    role = Column(String, nullable=False, default="customer")  # owner, customer

    # Billing fields. Written only by the webhook reconciler, except
    # stripe_customer_id which is assigned once on first checkout.
    stripe_customer_id = Column(String, unique=True, index=True, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    subscription_plan = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)  # trialing, active, past_due, cancelled
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    subscription_ends_at = Column(DateTime(timezone=True), nullable=True)
    # Processor timestamp of the event that last set subscription_status.
    status_changed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    payments = relationship("PaymentRecord", back_populates="account")


class PaymentRecord(Base):
    """
    One row per Stripe invoice. Rows are never deleted, but a failed row is
    updated in place to `succeeded` when Stripe later collects the same
    invoice, which clears its failure_reason.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    stripe_invoice_id = Column(String, unique=True, nullable=False)
    stripe_charge_id = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False)  # succeeded, failed
    failure_reason = Column(Text, nullable=True)
    invoice_url = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="payments")
