"""Spreadsheet source adapters and credential providers"""

from sheetsync.connectors.base import SourceAdapter
from sheetsync.connectors.google_sheets import GoogleSheetsAdapter, build_range
from sheetsync.connectors.google_oauth import GoogleCredentialProvider

__all__ = [
    "SourceAdapter",
    "GoogleSheetsAdapter",
    "GoogleCredentialProvider",
    "build_range",
]
