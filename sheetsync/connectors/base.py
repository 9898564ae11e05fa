"""
Base Source Adapter

Every spreadsheet-like source implements this interface. The orchestrator
only ever asks an adapter for a raw 2-D grid; all typing happens in the
mapping engine.
"""
from abc import ABC, abstractmethod
from typing import Any, List


class SourceAdapter(ABC):
    """Reads raw cell grids from one external source type"""

    source_type = "spreadsheet"

    @abstractmethod
    async def fetch_rows(self, source_id: str, range_spec: str) -> List[List[Any]]:
        """
        Fetch a rectangular block of raw cell values

        Args:
            source_id: Source identifier (e.g. spreadsheet ID)
            range_spec: A1 range including the sheet, e.g. "'Sheet1'!A1:Z1000"

        Returns:
            List of rows; trailing empty cells/rows may be omitted

        Raises:
            FetchError: the source could not be read
        """
        pass

    @abstractmethod
    async def list_sheet_titles(self, source_id: str) -> List[str]:
        """Names of the sheets inside a source"""
        pass
