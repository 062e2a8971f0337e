"""
tablezure: Azure Table Storage client

Entity serialization, key escaping, batches, shared access signatures and
retry-aware request execution for the Azure Table service.
"""

__version__ = "0.1.0"

from .table.client import CloudTable, CloudTableClient
from .auth.credentials import StorageCredentialsAccountAndKey, StorageCredentialsSharedAccessSignature
from .core.operation_context import OperationContext

__all__ = [
    "CloudTable",
    "CloudTableClient",
    "OperationContext",
    "StorageCredentialsAccountAndKey",
    "StorageCredentialsSharedAccessSignature",
    "__version__",
]
