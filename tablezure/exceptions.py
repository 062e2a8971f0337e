"""
Exception hierarchy for tablezure.

Every error carries a machine-readable error code and a details dict so it
can be reported without a network trace.
"""

import json
from typing import Any, Dict, Optional


class StorageError(Exception):
    """
    Base exception for all tablezure errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'EntityNotFound')
        details: Additional context (property name, offending value, ...)
    """

    error_code: str = "StorageError"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for diagnostics."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# ========== Validation Errors (local, pre-flight) ==========

class ValidationError(StorageError):
    """Raised before any request is sent when local input is invalid."""
    error_code = "ValidationError"


class KeyValidationError(ValidationError):
    """Raised when a PartitionKey or RowKey contains a forbidden character."""
    error_code = "InvalidKey"

    def __init__(self, key_name: str, value: str, reason: str):
        message = f"{key_name} {value!r} is invalid: {reason}"
        super().__init__(message, details={"key_name": key_name, "value": value})


class EntityValidationError(ValidationError):
    """Raised when an entity breaks a size or property-count limit."""
    error_code = "InvalidEntity"


class UnsupportedPayloadFormatError(ValidationError):
    """Raised when a payload format the codec cannot produce is selected."""
    error_code = "UnsupportedPayloadFormat"


class BatchValidationError(ValidationError):
    """Base class for atomic batch invariant violations."""
    error_code = "InvalidBatch"


class EmptyBatchError(BatchValidationError):
    """Raised when an empty batch is executed."""
    error_code = "EmptyBatch"


class BatchTooLargeError(BatchValidationError):
    """Raised when a batch holds more operations than allowed."""
    error_code = "TooManyOperations"


class BatchPartitionKeyError(BatchValidationError):
    """Raised when operations in one batch target different partitions."""
    error_code = "PartitionKeyMismatch"


class BatchRetrieveError(BatchValidationError):
    """Raised when a retrieve is mixed with other operations."""
    error_code = "RetrieveNotAlone"


class BatchDuplicateKeyError(BatchValidationError):
    """Raised when one batch acts twice on the same entity."""
    error_code = "DuplicateEntityInBatch"


class BatchPayloadTooLargeError(BatchValidationError):
    """Raised when the estimated batch payload exceeds the size limit."""
    error_code = "BatchPayloadTooLarge"


# ========== Serialization Errors ==========

class SerializationError(StorageError):
    """Raised when a payload cannot be encoded or decoded."""
    error_code = "SerializationError"


class PropertyParseError(SerializationError):
    """Raised when a raw value cannot be parsed as the declared EDM type."""
    error_code = "PropertyParseFailure"

    def __init__(self, property_name: str, raw_value: Any, edm_type: str):
        message = (
            f"Failed to parse property '{property_name}' with value "
            f"'{raw_value}' as type '{edm_type}'"
        )
        super().__init__(
            message,
            details={
                "property_name": property_name,
                "raw_value": raw_value,
                "edm_type": edm_type,
            }
        )
        self.property_name = property_name
        self.raw_value = raw_value
        self.edm_type = edm_type


class ResolverDelegateError(SerializationError):
    """Raised when a user supplied property resolver raises."""
    error_code = "ResolverDelegateFailure"

    def __init__(self, property_name: str):
        message = (
            "The custom property resolver delegate threw an exception. "
            "Check the inner exception for more details."
        )
        super().__init__(message, details={"property_name": property_name})
        self.property_name = property_name


# ========== Service / Transport Errors ==========

class ServiceError(StorageError):
    """
    Error reported by the Table service.

    Attributes:
        status: HTTP status code
        error_code: Service error code (e.g., 'EntityAlreadyExists')
        request_id: Value of the x-ms-request-id response header
    """
    error_code = "ServiceError"

    def __init__(
        self,
        status: int,
        message: str,
        error_code: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.status = status
        self.request_id = request_id

    @classmethod
    def from_response(cls, status: int, headers: Dict[str, str], body: bytes, **kwargs: Any) -> "ServiceError":
        """
        Build an error from an HTTP response.

        The Table service reports errors as
        ``{"odata.error": {"code": ..., "message": {"lang": ..., "value": ...}}}``.
        When the body is empty or not JSON the HTTP reason phrase is used.
        """
        code, message = parse_error_payload(body)
        lowered = {k.lower(): v for k, v in headers.items()}
        if message is None:
            message = HTTP_REASONS.get(status, f"HTTP {status}")
        return cls(
            status,
            message,
            error_code=code or HTTP_REASONS.get(status, "ServiceError").replace(" ", ""),
            request_id=lowered.get("x-ms-request-id"),
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["error"]["status"] = self.status
        return result


class BatchServiceError(ServiceError):
    """Service rejection of a whole batch, annotated with the failing index."""

    def __init__(self, *args: Any, failed_index: Optional[int] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.failed_index = failed_index


class TransportError(StorageError):
    """Network-level failure raised by a transport."""
    error_code = "TransportError"


class RetryExhaustedError(StorageError):
    """Raised when the retry budget is spent; the last cause is chained."""
    error_code = "RetryExhausted"

    def __init__(self, attempts: int, last_error: Exception):
        message = f"Operation failed after {attempts} attempt(s): {last_error}"
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelledError(StorageError):
    """Raised at an attempt boundary when the caller cancelled the operation."""
    error_code = "OperationCancelled"


HTTP_REASONS = {
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    408: "Request Timeout",
    409: "Conflict",
    412: "Precondition Failed",
    413: "Request Entity Too Large",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


def parse_error_payload(body: bytes) -> "tuple[Optional[str], Optional[str]]":
    """
    Extract (code, message) from an odata.error payload.

    Returns (None, None) when the body does not hold an error document.
    """
    if not body:
        return None, None
    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None, None
    if not isinstance(document, dict):
        return None, None
    error = document.get("odata.error") or document.get("error")
    if not isinstance(error, dict):
        return None, None
    message = error.get("message")
    if isinstance(message, dict):
        message = message.get("value")
    return error.get("code"), message
