"""Core module initialization."""

from .config_manager import ClientConfig, ConfigManager, TableRequestOptions
from .logging_config import apply_logging_config, setup_logging
from .operation_context import OperationContext, RequestResult

__all__ = [
    "ClientConfig",
    "ConfigManager",
    "OperationContext",
    "RequestResult",
    "TableRequestOptions",
    "apply_logging_config",
    "setup_logging",
]
