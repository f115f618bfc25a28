"""
Error taxonomy for the portfolio backend.

Every error carries a user-facing message, a stable error code and the HTTP
status the API layer should answer with.
"""

from typing import Optional


class VaultError(Exception):
    """Base error for all portfolio/auth/ledger failures."""

    status_code = 400

    def __init__(self, message: str, error_code: str = "ERROR", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code


# ── Validation ────────────────────────────────────────────────────────────

class InvalidInputError(VaultError):
    """Request rejected before any state was touched."""

    def __init__(self, message: str, error_code: str = "INVALID_INPUT"):
        super().__init__(message, error_code=error_code)


class InvalidAddressError(InvalidInputError):
    def __init__(self, address: str):
        super().__init__(
            f"Invalid Ethereum address: {address}. Must be a 20-byte hex value (40 hex characters).",
            error_code="INVALID_ADDRESS",
        )
        self.address = address


class InvalidWeightsError(InvalidInputError):
    def __init__(self, total_weight: float, reason: str = ""):
        message = reason or f"Total weight must equal 100% (got {total_weight:.2f}%)"
        super().__init__(message, error_code="INVALID_WEIGHTS")
        self.total_weight = total_weight


class InvalidAmountError(InvalidInputError):
    def __init__(self, amount, reason: str = "Amount must be positive"):
        super().__init__(f"{reason}: {amount}", error_code="INVALID_AMOUNT")
        self.amount = amount


# ── Domain ────────────────────────────────────────────────────────────────

class InsufficientBalanceError(VaultError):
    def __init__(self, requested: float, available: float):
        super().__init__(
            f"Insufficient balance. Available: {available:.2f} USDC",
            error_code="INSUFFICIENT_BALANCE",
        )
        self.requested = requested
        self.available = available


class PortfolioNotFoundError(VaultError):
    status_code = 404

    def __init__(self, portfolio_id: str):
        super().__init__(f"Portfolio not found: {portfolio_id}", error_code="PORTFOLIO_NOT_FOUND")
        self.portfolio_id = portfolio_id


class PortfolioInactiveError(VaultError):
    status_code = 409

    def __init__(self, portfolio_id: str):
        super().__init__(f"Portfolio {portfolio_id} is disabled", error_code="PORTFOLIO_INACTIVE")
        self.portfolio_id = portfolio_id


class TransactionStateError(VaultError):
    status_code = 409

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(f"Transaction {transaction_id}: {reason}", error_code="TRANSACTION_STATE")
        self.transaction_id = transaction_id


# ── Authentication ────────────────────────────────────────────────────────

class AuthenticationError(VaultError):
    status_code = 401


class SignatureExpiredError(AuthenticationError):
    def __init__(self, age_seconds: int):
        super().__init__("Signature expired. Please try again.", error_code="SIGNATURE_EXPIRED")
        self.age_seconds = age_seconds


class FutureTimestampError(AuthenticationError):
    def __init__(self, skew_seconds: int):
        super().__init__(
            "Invalid timestamp. Please check your system clock.",
            error_code="FUTURE_TIMESTAMP",
        )
        self.skew_seconds = skew_seconds


class InvalidSignatureError(AuthenticationError):
    def __init__(self):
        super().__init__("Invalid signature", error_code="INVALID_SIGNATURE")


class MalformedSignatureError(AuthenticationError):
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(f"Malformed signature request: {reason}", error_code="MALFORMED_SIGNATURE")
        self.reason = reason


# ── Integration ───────────────────────────────────────────────────────────

class SettlementFailedError(VaultError):
    status_code = 502

    def __init__(self, kind: str, reason: str):
        super().__init__(f"Settlement failed for {kind}: {reason}", error_code="SETTLEMENT_FAILED")
        self.kind = kind
        self.reason = reason


class PersistenceError(VaultError):
    status_code = 500

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Failed to {operation}: {reason}", error_code="PERSISTENCE_ERROR")
        self.operation = operation
        self.reason = reason
