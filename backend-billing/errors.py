"""
Billing error taxonomy.

Every error carries the HTTP status it maps to on the interactive endpoints.
The webhook endpoint does not render these bodies; it only distinguishes
InvalidSignature (terminal, 400) from everything else (500, redelivered).
"""


class BillingError(Exception):
    status_code = 500
    message = "Internal Processing Error"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class Unauthorized(BillingError):
    status_code = 401
    message = "Unauthorized"


class AccountNotFound(BillingError):
    status_code = 404
    message = "Account not found"


class InvalidPlan(BillingError):
    status_code = 400
    message = "Unknown subscription plan"


class NoBillingCustomer(BillingError):
    status_code = 400
    message = "No subscription found"


class InvalidSignature(BillingError):
    status_code = 400
    message = "Invalid signature"


class UpstreamUnavailable(BillingError):
    status_code = 502
    message = "Billing service unavailable"
