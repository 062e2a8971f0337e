"""
Authentication and authorization for the Table service.

Supports SharedKey request signing and table shared access signatures.
"""

from tablezure.auth.credentials import (
    StorageCredentials,
    StorageCredentialsAccountAndKey,
    StorageCredentialsSharedAccessSignature,
)
from tablezure.auth.exceptions import (
    AuthenticationError,
    CredentialError,
    SasDerivationError,
    SasValidationError,
)
from tablezure.auth.sas import (
    SasTokenGenerator,
    SharedAccessTablePermissions,
    SharedAccessTablePolicy,
    TablePermissions,
)
from tablezure.auth.sharedkey import SharedKeyAuthenticator, sign_request

__all__ = [
    # Credentials
    "StorageCredentials",
    "StorageCredentialsAccountAndKey",
    "StorageCredentialsSharedAccessSignature",
    # Exceptions
    "AuthenticationError",
    "CredentialError",
    "SasDerivationError",
    "SasValidationError",
    # SAS
    "SasTokenGenerator",
    "SharedAccessTablePermissions",
    "SharedAccessTablePolicy",
    "TablePermissions",
    # SharedKey
    "SharedKeyAuthenticator",
    "sign_request",
]
