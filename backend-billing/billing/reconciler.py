import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, get_args

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
from billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCancelled,
    Unhandled,
    VerifiedEvent,
)
from errors import UpstreamUnavailable
from models import Account, PaymentRecord

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_major_units(amount: int) -> Decimal:
    """Stripe amounts are integers in the currency's minor unit."""
    return (Decimal(amount) / 100).quantize(CENTS)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"


def _not_cancelled():
    return or_(Account.subscription_status.is_(None), Account.subscription_status != "cancelled")


class SubscriptionReconciler:
    """
    Applies verified Stripe events to Account and PaymentRecord rows.

    Each event is applied in one transaction. Status writes are conditional
    UPDATEs so that concurrent or out-of-order deliveries cannot move an
    account backwards:

    * a status is only written by an event at least as new as the one that
      wrote the current status (`status_changed_at`);
    * `cancelled` is terminal for invoice events, and only a strictly newer
      checkout (a resubscribe) leaves it;
    * `subscription_ends_at` only moves forward on successful payments.
    """

    def __init__(self, db: Session, trial_period_days: int = 14):
        self.db = db
        self.trial_period_days = trial_period_days
        self._handlers = {
            CheckoutCompleted: self._checkout_completed,
            InvoicePaymentSucceeded: self._payment_succeeded,
            InvoicePaymentFailed: self._payment_failed,
            SubscriptionCancelled: self._subscription_cancelled,
        }
        missing = set(get_args(VerifiedEvent)) - set(self._handlers) - {Unhandled}
        if missing:
            raise TypeError(f"No reconciler handler for {sorted(m.__name__ for m in missing)}")

    def apply(self, event: VerifiedEvent) -> ReconcileOutcome:
        if isinstance(event, Unhandled):
            logger.info(f"Unhandled event type: {event.event_type} ({event.event_id})")
            return ReconcileOutcome.IGNORED

        handler = self._handlers[type(event)]
        try:
            account_id = self._resolve_account(event)
            if account_id is None:
                logger.warning(
                    f"Dropping {event.event_type} {event.event_id}: no account for "
                    f"metadata={event.account_id} customer={event.customer_id}"
                )
                return ReconcileOutcome.UNRESOLVED

            outcome = handler(account_id, event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to apply {event.event_type} {event.event_id}", exc_info=True)
            raise UpstreamUnavailable() from e

        logger.info(f"{event.event_type} {event.event_id} -> account {account_id}: {outcome.value}")
        return outcome

    def _resolve_account(self, event: BillingEvent) -> Optional[str]:
        if event.account_id and crud.get_account(self.db, event.account_id):
            return event.account_id
        if event.customer_id:
            account = crud.get_account_by_customer_id(self.db, event.customer_id)
            if account:
                return account.id
        return None

    def _transition(self, account_id: str, status: str, at: datetime, reopen_cancelled: bool = False, **values) -> bool:
        stmt = update(Account).where(
            Account.id == account_id,
            or_(Account.status_changed_at.is_(None), Account.status_changed_at <= at),
        )
        if reopen_cancelled:
            stmt = stmt.where(or_(_not_cancelled(), Account.status_changed_at < at))
        elif status != "cancelled":
            stmt = stmt.where(_not_cancelled())
        stmt = stmt.values(subscription_status=status, status_changed_at=at, **values)
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount > 0

    # --- Handlers ---

    def _checkout_completed(self, account_id: str, event: CheckoutCompleted) -> ReconcileOutcome:
        values = {
            "stripe_subscription_id": event.subscription_id,
            "trial_ends_at": event.created + timedelta(days=self.trial_period_days),
        }
        if event.plan:
            values["subscription_plan"] = event.plan

        if self._transition(account_id, "active", event.created, reopen_cancelled=True, **values):
            return ReconcileOutcome.APPLIED

        # Older than the current status: keep the status, but still bind the
        # subscription and plan if nothing newer has bound them.
        result = self.db.execute(
            update(Account)
            .where(
                Account.id == account_id,
                or_(
                    Account.stripe_subscription_id.is_(None),
                    (Account.stripe_subscription_id == event.subscription_id)
                    & Account.subscription_plan.is_(None),
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return ReconcileOutcome.STALE
        return ReconcileOutcome.APPLIED

    def _payment_succeeded(self, account_id: str, event: InvoicePaymentSucceeded) -> ReconcileOutcome:
        existing = crud.get_payment_by_invoice(self.db, event.invoice_id)
        if existing and existing.status == "succeeded":
            return ReconcileOutcome.DUPLICATE

        paid_at = event.paid_at or event.created
        amount = to_major_units(event.amount_paid)
        if existing:
            # A retried invoice that failed earlier has now been paid.
            existing.status = "succeeded"
            existing.amount = amount
            existing.stripe_charge_id = event.charge_id or existing.stripe_charge_id
            existing.failure_reason = None
            existing.paid_at = paid_at
            existing.invoice_url = event.invoice_url or existing.invoice_url
        else:
            self.db.add(PaymentRecord(
                account_id=account_id,
                stripe_invoice_id=event.invoice_id,
                stripe_charge_id=event.charge_id,
                amount=amount,
                currency=event.currency,
                status="succeeded",
                invoice_url=event.invoice_url,
                paid_at=paid_at,
            ))

        self._transition(account_id, "active", event.created)
        if event.period_end:
            self.db.execute(
                update(Account)
                .where(
                    Account.id == account_id,
                    _not_cancelled(),
                    or_(Account.subscription_ends_at.is_(None), Account.subscription_ends_at < event.period_end),
                )
                .values(subscription_ends_at=event.period_end)
                .execution_options(synchronize_session=False)
            )
        return ReconcileOutcome.APPLIED

    def _payment_failed(self, account_id: str, event: InvoicePaymentFailed) -> ReconcileOutcome:
        if crud.get_payment_by_invoice(self.db, event.invoice_id):
            return ReconcileOutcome.DUPLICATE

        self.db.add(PaymentRecord(
            account_id=account_id,
            stripe_invoice_id=event.invoice_id,
            stripe_charge_id=event.charge_id,
            amount=to_major_units(event.amount_due),
            currency=event.currency,
            status="failed",
            failure_reason=event.failure_reason,
            invoice_url=event.invoice_url,
        ))
        self._transition(account_id, "past_due", event.created)
        return ReconcileOutcome.APPLIED

    def _subscription_cancelled(self, account_id: str, event: SubscriptionCancelled) -> ReconcileOutcome:
        account = crud.get_account(self.db, account_id)
        if account.stripe_subscription_id and account.stripe_subscription_id != event.subscription_id:
            # The account has since moved to another subscription.
            return ReconcileOutcome.STALE

        values = {}
        if event.ended_at:
            values["subscription_ends_at"] = event.ended_at
        if not self._transition(account_id, "cancelled", event.created, **values):
            return ReconcileOutcome.STALE
        return ReconcileOutcome.APPLIED
