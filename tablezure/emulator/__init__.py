"""
In-memory Table service emulator.

Plugs into ``CloudTableClient`` as its transport so the full request path
can run without a network.
"""

from tablezure.emulator.backend import TableBackend, TableServiceError
from tablezure.emulator.query import ODataFilter, ODataParseError, ODataQuery
from tablezure.emulator.service import DEVSTORE_ACCOUNT_KEY, DEVSTORE_ACCOUNT_NAME, InMemoryTableService

__all__ = [
    "TableBackend",
    "TableServiceError",
    "ODataFilter",
    "ODataParseError",
    "ODataQuery",
    "DEVSTORE_ACCOUNT_KEY",
    "DEVSTORE_ACCOUNT_NAME",
    "InMemoryTableService",
]
