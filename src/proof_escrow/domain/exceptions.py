"""Domain exceptions for Proof Escrow.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""


class ProofEscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "PROOF_ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidStateTransitionError(ProofEscrowError):
    """Raised when a user action is not allowed from the deal's current status.

    Example: submitting a post for a deal that is still PendingFunding.
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted} not allowed from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


# --- Lookup Errors ---


class NotFoundError(ProofEscrowError):
    """Base for missing entities (mapped to 404)."""


class DealNotFoundError(NotFoundError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(message=f"Deal not found: {deal_id}", code="DEAL_NOT_FOUND")
        self.deal_id = deal_id


class ReviewNotFoundError(NotFoundError):
    def __init__(self, review_id: str) -> None:
        super().__init__(message=f"Review not found: {review_id}", code="REVIEW_NOT_FOUND")
        self.review_id = review_id


# --- Caller Errors ---


class DealValidationError(ProofEscrowError):
    """Raised when request input violates a business rule (bad URL, bad duration)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")


class PermissionDeniedError(ProofEscrowError):
    """Raised when the acting identity may not perform the action."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FORBIDDEN")


class AuthenticationError(ProofEscrowError):
    """Raised when a shared secret or bearer credential is missing or wrong."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message=message, code="UNAUTHORIZED")


class ReviewClosedError(ProofEscrowError):
    def __init__(self, review_id: str) -> None:
        super().__init__(
            message=f"Review already closed: {review_id}",
            code="REVIEW_CLOSED",
        )
        self.review_id = review_id


# --- Settlement Errors ---


class SettlementError(ProofEscrowError):
    """Raised when a deal is not eligible for payout or refund."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="SETTLEMENT_ERROR")


class SettlementInProgressError(SettlementError):
    """Raised when another worker holds the settlement lock for a deal."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Settlement already in progress for {key}")
        self.code = "SETTLEMENT_IN_PROGRESS"
        self.key = key


class PaymentError(ProofEscrowError):
    """Raised when the payment backend rejects a transfer or refund."""

    def __init__(self, message: str, tx_ref: str | None = None) -> None:
        super().__init__(message=message, code="PAYMENT_ERROR")
        self.tx_ref = tx_ref


# --- External Service Errors ---


class AnalysisServiceError(ProofEscrowError):
    """Raised by the analysis client when dispatch fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message=message, code="ANALYSIS_SERVICE_ERROR")
        self.status_code = status_code


class AnalysisTimeoutError(AnalysisServiceError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(message=f"Analysis request timed out after {timeout_seconds}s")
        self.code = "ANALYSIS_TIMEOUT"


class NotificationError(ProofEscrowError):
    """Raised when a review notification cannot be delivered."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="NOTIFICATION_ERROR")
