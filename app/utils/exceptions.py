"""Custom exception classes."""


class EntitlementServiceException(Exception):
    """Base exception for the entitlement service."""

    pass


class AuthenticationError(EntitlementServiceException):
    """Raised when authentication fails."""

    pass


class ValidationError(EntitlementServiceException):
    """Raised when input validation fails."""

    pass


class StoreError(EntitlementServiceException):
    """Raised when the entitlement store cannot be read or written."""

    pass


class ReceiptValidationError(EntitlementServiceException):
    """Base class for receipt validation failures.

    ``code`` is the name returned to callers in ``{"success": false, "error": code}``.
    ``retryable`` tells the caller whether offering "try again" makes sense.
    """

    code = "ReceiptValidationError"
    retryable = False


class MalformedReceipt(ReceiptValidationError):
    """Receipt cannot be parsed or decoded."""

    code = "MalformedReceipt"


class AuthorityRejected(ReceiptValidationError):
    """Billing authority says the receipt is bad, expired or tampered."""

    code = "AuthorityRejected"


class ProductMismatch(ReceiptValidationError):
    """Receipt is valid but not for the requested product."""

    code = "ProductMismatch"


class AuthorityUnavailable(ReceiptValidationError):
    """Billing authority unreachable, timed out or returned a 5xx."""

    code = "AuthorityUnavailable"
    retryable = True


class ConfigurationError(ReceiptValidationError):
    """Validator is missing a shared secret, root certificate or service account.

    Operator-facing; never shown to end users verbatim.
    """

    code = "ConfigurationError"
