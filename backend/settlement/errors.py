"""
Settlement exceptions.

Verification failures are not exceptions: rails return a failed
VerificationOutcome that is recorded on the payment.
"""


class SettlementError(Exception):
    """Base class for settlement errors."""
    status_code = 400

    def __init__(self, message: str, payment_id: str = None):
        self.message = message
        self.payment_id = payment_id
        super().__init__(message)

    def to_dict(self):
        """Convert to API response format."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "payment_id": self.payment_id,
        }


class PaymentValidationError(SettlementError):
    """Malformed submission, caught before any record or rail call."""
    status_code = 400


class PaymentNotFoundError(SettlementError):
    status_code = 404


class UserNotFoundError(SettlementError):
    status_code = 404


class InvalidPaymentStateError(SettlementError):
    """Requested action is not allowed from the payment's current status."""
    status_code = 409


class StorageError(SettlementError):
    """Persistence layer unreachable. Retryable at the request level."""
    status_code = 503
