"""
Authorization exceptions for tablezure.
"""

from tablezure.exceptions import StorageError


class CredentialError(StorageError):
    """Base exception for credential and signing errors."""
    error_code = "CredentialError"


class SasDerivationError(CredentialError):
    """Raised when a SAS is requested from credentials that are already a SAS."""

    def __init__(self, message: str = "Cannot create a shared access signature from a shared access signature"):
        super().__init__(message, "CannotDeriveSas")


class InvalidAccountKeyError(CredentialError):
    """Raised when an account key is not valid base64."""

    def __init__(self, message: str = "Account key must be base64 encoded"):
        super().__init__(message, "InvalidAccountKey")


class AuthenticationError(StorageError):
    """Raised by the service side when a request cannot be authorized."""
    error_code = "AuthenticationFailed"


class InvalidAuthorizationHeaderError(AuthenticationError):
    """Raised when the Authorization header is malformed."""

    def __init__(self, message: str = "Invalid Authorization header format"):
        super().__init__(message, "InvalidAuthorizationHeader")


class SignatureMismatchError(AuthenticationError):
    """Raised when the computed signature does not match the provided one."""

    def __init__(self, message: str = "Server failed to authenticate the request. Signature mismatch."):
        super().__init__(message, "AuthenticationFailed")


class SasValidationError(AuthenticationError):
    """Raised when a shared access signature is invalid, expired or insufficient."""

    def __init__(self, message: str, error_code: str = "AuthenticationFailed"):
        super().__init__(message, error_code)
