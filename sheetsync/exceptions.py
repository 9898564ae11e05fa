"""
Sync error taxonomy

ConfigError  - a source is missing a required mapping; fails that source before any fetch
AuthError    - credential lookup/refresh failed; fails the whole project run
FetchError   - the spreadsheet API call failed; scoped to one (source, sheet) unit
ParseError   - a single row failed coercion; the row is dropped
MergeError   - a single record write failed; counted, the batch continues
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigError(SyncError):
    """Source configuration is invalid for the requested sync mode."""


class AuthError(SyncError):
    """No usable access token could be obtained for the project."""


class FetchError(SyncError):
    """Reading rows from the spreadsheet source failed."""


class ParseError(SyncError):
    """A raw cell could not be coerced into a required typed value."""


class MergeError(SyncError):
    """Writing a single record to the store failed."""
