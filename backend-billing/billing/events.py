"""
Verification and typing of Stripe webhook deliveries.

A delivery is authenticated against the raw request bytes with Stripe's
signature scheme, then turned into one of a closed set of event models.
Anything the reconciler does not act on becomes `Unhandled`.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal, Optional, Union

import stripe
from pydantic import BaseModel

from errors import InvalidSignature

logger = logging.getLogger(__name__)


def from_unix(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BillingEvent(BaseModel):
    event_id: str
    event_type: str
    created: datetime
    account_id: Optional[str] = None
    customer_id: Optional[str] = None


class CheckoutCompleted(BillingEvent):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session_id: str
    subscription_id: Optional[str] = None
    plan: Optional[str] = None


class InvoicePaymentSucceeded(BillingEvent):
    kind: Literal["invoice_payment_succeeded"] = "invoice_payment_succeeded"
    invoice_id: str
    charge_id: Optional[str] = None
    amount_paid: int  # minor units
    currency: Optional[str] = None
    invoice_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    period_end: Optional[datetime] = None


class InvoicePaymentFailed(BillingEvent):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    invoice_id: str
    charge_id: Optional[str] = None
    amount_due: int  # minor units
    currency: Optional[str] = None
    invoice_url: Optional[str] = None
    failure_reason: Optional[str] = None


class SubscriptionCancelled(BillingEvent):
    kind: Literal["subscription_cancelled"] = "subscription_cancelled"
    subscription_id: str
    ended_at: Optional[datetime] = None


class Unhandled(BillingEvent):
    kind: Literal["unhandled"] = "unhandled"


VerifiedEvent = Union[
    CheckoutCompleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    SubscriptionCancelled,
    Unhandled,
]


# --- Payload helpers ---

def _metadata_account(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    # "user_id" is what sessions created by the first checkout flow carried.
    return metadata.get("account_id") or metadata.get("user_id")


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_account(invoice: Dict[str, Any]) -> Optional[str]:
    candidates = [
        invoice.get("metadata"),
        (invoice.get("subscription_details") or {}).get("metadata"),
        ((invoice.get("parent") or {}).get("subscription_details") or {}).get("metadata"),
    ]
    candidates.extend(line.get("metadata") for line in (invoice.get("lines") or {}).get("data", []))
    for metadata in candidates:
        account_id = _metadata_account(metadata)
        if account_id:
            return account_id
    return None


def _invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    ends = [
        (line.get("period") or {}).get("end")
        for line in (invoice.get("lines") or {}).get("data", [])
    ]
    ends = [end for end in ends if end]
    if ends:
        return from_unix(max(ends))
    return from_unix(invoice.get("period_end"))


def _failure_reason(invoice: Dict[str, Any]) -> Optional[str]:
    errors = [
        invoice.get("last_payment_error"),
        (invoice.get("payment_intent") if isinstance(invoice.get("payment_intent"), dict) else {}).get("last_payment_error"),
        invoice.get("last_finalization_error"),
    ]
    for error in errors:
        if error:
            return error.get("code") or error.get("decline_code") or error.get("message")
    return None


def _base_fields(payload: Dict[str, Any], obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event_id": payload["id"],
        "event_type": payload["type"],
        "created": from_unix(payload["created"]),
        "customer_id": _id_of(obj.get("customer")),
    }


# --- Per-type parsers ---

def _checkout_completed(payload, session) -> CheckoutCompleted:
    metadata = session.get("metadata") or {}
    return CheckoutCompleted(
        **_base_fields(payload, session),
        account_id=_metadata_account(metadata) or session.get("client_reference_id"),
        session_id=session["id"],
        subscription_id=_id_of(session.get("subscription")),
        plan=metadata.get("plan"),
    )


def _invoice_succeeded(payload, invoice) -> InvoicePaymentSucceeded:
    transitions = invoice.get("status_transitions") or {}
    return InvoicePaymentSucceeded(
        **_base_fields(payload, invoice),
        account_id=_invoice_account(invoice),
        invoice_id=invoice["id"],
        charge_id=_id_of(invoice.get("charge")),
        amount_paid=invoice.get("amount_paid") or 0,
        currency=invoice.get("currency"),
        invoice_url=invoice.get("hosted_invoice_url"),
        paid_at=from_unix(transitions.get("paid_at")),
        period_end=_invoice_period_end(invoice),
    )


def _invoice_failed(payload, invoice) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        **_base_fields(payload, invoice),
        account_id=_invoice_account(invoice),
        invoice_id=invoice["id"],
        charge_id=_id_of(invoice.get("charge")),
        amount_due=invoice.get("amount_due") or 0,
        currency=invoice.get("currency"),
        invoice_url=invoice.get("hosted_invoice_url"),
        failure_reason=_failure_reason(invoice),
    )


def _subscription_cancelled(payload, subscription) -> SubscriptionCancelled:
    ended_at = (
        subscription.get("ended_at")
        or subscription.get("cancel_at")
        or subscription.get("current_period_end")
    )
    return SubscriptionCancelled(
        **_base_fields(payload, subscription),
        account_id=_metadata_account(subscription.get("metadata")),
        subscription_id=subscription["id"],
        ended_at=from_unix(ended_at),
    )


EVENT_PARSERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], VerifiedEvent]] = {
    "checkout.session.completed": _checkout_completed,
    "invoice.payment_succeeded": _invoice_succeeded,
    "invoice.paid": _invoice_succeeded,
    "invoice.payment_failed": _invoice_failed,
    "customer.subscription.deleted": _subscription_cancelled,
}


def parse_event(payload: Dict[str, Any]) -> VerifiedEvent:
    """Turns a decoded Stripe event into its typed variant."""
    try:
        obj = payload["data"]["object"]
        parser = EVENT_PARSERS.get(payload["type"])
        if parser is None:
            return Unhandled(**_base_fields(payload, obj))
        return parser(payload, obj)
    except (KeyError, TypeError, AttributeError, ValueError, OverflowError, OSError) as e:
        logger.warning(f"Malformed webhook event: {e}")
        raise InvalidSignature("Malformed event payload") from e


class WebhookVerifier:
    def __init__(self, secret: str, tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        """
        Authenticates `raw_body` exactly as received. Any failure is final:
        the payload is never looked at unless the signature matches.
        """
        if not signature_header:
            raise InvalidSignature("Missing signature header")

        try:
            body = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature_header, self.secret, self.tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            raise InvalidSignature() from e

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidSignature("Invalid payload") from e
        if not isinstance(payload, dict):
            raise InvalidSignature("Invalid payload")

        return parse_event(payload)
