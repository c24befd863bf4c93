"""Error taxonomy for the escrow service.

Each error carries the HTTP status the API reports it with. Validation,
authorization and funds errors are terminal; RpcUnavailableError is the only
retryable one.
"""


class VulneraError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationError(VulneraError):
    """Malformed or out-of-range input."""
    status_code = 400
    code = "validation_error"


class InvalidAddressError(ValidationError):
    code = "invalid_address"


class InvalidSignatureError(ValidationError):
    code = "invalid_signature"


class InsufficientFundsError(VulneraError):
    """Advisory balance check failed (wallet or escrow)."""
    status_code = 400
    code = "insufficient_funds"


class UnconfirmedTransactionError(VulneraError):
    """On-chain proof not available yet. Caller retries later, not immediately."""
    status_code = 400
    code = "unconfirmed_transaction"


class TransactionRejectedError(VulneraError):
    """The chain refused the transaction before it could land. Terminal."""
    status_code = 400
    code = "transaction_rejected"


class AuthenticationError(VulneraError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(VulneraError):
    status_code = 403
    code = "forbidden"


class NotFoundError(VulneraError):
    status_code = 404
    code = "not_found"


class ConflictError(VulneraError):
    """The record moved under us: another request already made the transition."""
    status_code = 409
    code = "conflict"


class RateLimitedError(VulneraError):
    status_code = 429
    code = "rate_limited"


class RpcUnavailableError(VulneraError):
    """Chain RPC unreachable or timed out.

    signature is set when the failure happened after a transaction was
    submitted: the transaction may still land, so its record stays PENDING.
    """
    status_code = 503
    code = "rpc_unavailable"

    def __init__(self, message: str = "", signature: str | None = None, **extra):
        super().__init__(message, **extra)
        self.signature = signature
