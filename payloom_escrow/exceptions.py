"""
Exception hierarchy for the escrow core.

The HTTP layer maps each family to a status code, so raise the most specific
class that applies.
"""


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    code = "ESCROW_ERROR"


class ValidationError(EscrowError):
    """Raised when request input fails validation."""
    code = "VALIDATION_ERROR"


class NotFoundError(EscrowError):
    """Raised when a referenced record does not exist."""
    code = "NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    code = "ORDER_NOT_FOUND"


class WalletNotFoundError(NotFoundError):
    code = "WALLET_NOT_FOUND"


class DisputeNotFoundError(NotFoundError):
    code = "DISPUTE_NOT_FOUND"


class PermissionDeniedError(EscrowError):
    """Raised when the caller is not a party to the order."""
    code = "FORBIDDEN"


class StateTransitionError(EscrowError):
    """
    Raised when an operation conflicts with the current state.

    Callers should read this as "someone else already did it" and not retry.
    """
    code = "STATE_CONFLICT"


class WalletAlreadyExistsError(StateTransitionError):
    code = "WALLET_EXISTS"


class AlreadyReleasedError(StateTransitionError):
    code = "ALREADY_RELEASED"


class AlreadyRefundedError(StateTransitionError):
    code = "ALREADY_REFUNDED"


class DisputeExistsError(StateTransitionError):
    code = "DISPUTE_EXISTS"

    def __init__(self, message: str, dispute_id=None):
        super().__init__(message)
        self.dispute_id = dispute_id


class DuplicateTransactionCodeError(StateTransitionError):
    code = "DUPLICATE_CODE"


class InvalidStateError(StateTransitionError):
    code = "INVALID_STATE"


class PayoutExistsError(StateTransitionError):
    code = "PAYOUT_EXISTS"


class UpstreamError(EscrowError):
    """Raised when a payment provider call fails."""
    code = "UPSTREAM_ERROR"
