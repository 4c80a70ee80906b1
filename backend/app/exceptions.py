"""Service errors.

Every error carries the HTTP status code it is reported with, so routers and
the webhook endpoint can surface domain failures without re-mapping them.
"""


class ServiceError(Exception):
    """Base error with a human-readable message and HTTP status."""

    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message}


class ValidationError(ServiceError):
    """A required field is missing or malformed."""


class NotFoundError(ServiceError):
    """The requested record does not exist."""

    status_code = 404


class AccountResolutionError(ServiceError):
    """A Stripe customer carries no account identifier in its metadata.

    Indicates a customer provisioned outside the payment-sheet flow.
    """

    def __init__(self, customer_id: str | None):
        self.customer_id = customer_id
        super().__init__(f"Account identifier not found in metadata for customer {customer_id}")


class InvalidTransitionError(ServiceError):
    """The requested action is not legal from the record's current state."""


class UpstreamError(ServiceError):
    """A Stripe or store call failed.

    Retryable failures (timeouts, connection errors) are reported as 503 so the
    caller, or Stripe's webhook redelivery, tries again.
    """

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message, status_code=503 if retryable else 400)
