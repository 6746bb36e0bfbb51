from __future__ import annotations


class BillingError(Exception):
    """Base for errors surfaced to API callers as `{"error": message}`."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BillingError):
    status_code = 500


class Unauthorized(BillingError):
    status_code = 401


class ValidationFailed(BillingError):
    status_code = 400


class InvalidPlan(ValidationFailed):
    pass


class InvalidAction(ValidationFailed):
    pass


class NoBillingCustomer(BillingError):
    status_code = 400


class NoSubscription(BillingError):
    status_code = 400


class ProfileNotFound(BillingError):
    status_code = 404


class MalformedEvent(BillingError):
    status_code = 400


class ActiveSubscriptionError(BillingError):
    status_code = 409


class AccountDeletionError(BillingError):
    status_code = 500


class InvalidSignature(BillingError):
    status_code = 400
