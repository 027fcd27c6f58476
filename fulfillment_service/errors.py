"""
Error taxonomy. Each error knows the HTTP status it maps to so the API layer
can render it without a lookup table.

Client errors (400/422) should not be retried as-is. Conflicts (409) mean the
caller should re-fetch and choose again (e.g. a different rider). 503 means a
dependency was unreachable and the same request may be retried later.
"""


class FulfillmentError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def code(self) -> str:
        return self.__class__.__name__


class NotFoundError(FulfillmentError):
    status_code = 404


class InvalidOrderError(FulfillmentError):
    status_code = 400


class InvalidRiderError(FulfillmentError):
    status_code = 400


class InvalidTransitionError(FulfillmentError):
    status_code = 422


class RiderRequiredError(FulfillmentError):
    status_code = 422


class StaleTransitionError(FulfillmentError):
    status_code = 409


class RiderUnavailableError(FulfillmentError):
    status_code = 409


class RiderBusyError(FulfillmentError):
    status_code = 409


class InvalidPaymentError(FulfillmentError):
    status_code = 400


class DuplicateActivePaymentError(FulfillmentError):
    status_code = 400


class OverRefundError(FulfillmentError):
    status_code = 400


class PaymentStateError(FulfillmentError):
    status_code = 422


class ProcessorDeclinedError(FulfillmentError):
    """The processor gave a definitive negative answer."""

    status_code = 400


class ProcessorUnavailableError(FulfillmentError):
    """Transient processor failure. Never means the payment failed."""

    status_code = 503


class CatalogUnavailableError(FulfillmentError):
    status_code = 503


class CancellationFailedError(FulfillmentError):
    """A sub-step of a cancellation failed; nothing was applied."""

    def __init__(self, message: str, cause: FulfillmentError):
        super().__init__(message)
        self.cause = cause
        self.status_code = cause.status_code
