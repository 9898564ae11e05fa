"""
Column Mapping Engine

Turns a raw spreadsheet grid into typed domain records:

1. Detect the header row (skipping title/banner rows above the table)
2. Resolve configured column letters to zero-based indices
3. Coerce cells to numbers, ISO dates or trimmed strings
4. Build aggregate (one per date) or individual (one per unique id) records

Rows whose required date or unique id cannot be coerced are dropped.
"""
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, List, Optional, Sequence, Union

from dateutil import parser as date_parser

from sheetsync.config import get_settings
from sheetsync.exceptions import ParseError
from sheetsync.schemas.records import AggregateRecord, IndividualRecord
from sheetsync.schemas.sync_config import (
    DATE_KEY,
    PREDEFINED_METRICS,
    SourceConfig,
    SyncMode,
)
from sheetsync.utils.logger import log

settings = get_settings()

Record = Union[AggregateRecord, IndividualRecord]

MIN_HEADER_CELLS = 3

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_LIKE_RES = (
    re.compile(r"^\d{4}-\d{1,2}-\d{1,2}"),
    re.compile(r"^\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}"),
    re.compile(r"^\d{4}/\d{1,2}/\d{1,2}"),
)
_PURE_NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")
_NUMBER_STRIP_RE = re.compile(r"[$,%\s]")


# ── Column letters ──────────────────────────────────────────────

def column_letter_to_index(letter: str) -> int:
    """A -> 0, Z -> 25, AA -> 26 (bijective base-26)."""
    if not letter or not isinstance(letter, str):
        raise ValueError(f"Invalid column letter: {letter!r}")
    result = 0
    for char in letter.strip().upper():
        if not "A" <= char <= "Z":
            raise ValueError(f"Invalid column letter: {letter!r}")
        result = result * 26 + (ord(char) - ord("A") + 1)
    if result == 0:
        raise ValueError(f"Invalid column letter: {letter!r}")
    return result - 1


def index_to_column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = []
    n = index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        letters.append(chr(ord("A") + remainder))
    return "".join(reversed(letters))


# ── Cell classification ─────────────────────────────────────────

def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_date_like(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    return any(pattern.match(text) for pattern in _DATE_LIKE_RES)


def is_numeric_like(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return parse_number(value) is not None


def detect_header_row(rows: Sequence[Sequence[Any]], scan_limit: int = 20) -> int:
    """
    Index of the header row within the first `scan_limit` rows.

    The header is the first row with enough non-empty cells that is
    directly followed by a row holding a date-like or numeric cell.
    "Enough" is 3, or the widest row in the window when the table is
    narrower than that. Falls back to row 0.
    """
    window = list(rows[:scan_limit])
    if not window:
        return 0

    filled = [sum(1 for cell in row if not _is_empty(cell)) for row in window]
    threshold = min(MIN_HEADER_CELLS, max(filled))
    if threshold == 0:
        return 0

    for idx in range(len(window) - 1):
        if filled[idx] < threshold:
            continue
        next_row = window[idx + 1]
        if any(is_date_like(cell) or is_numeric_like(cell) for cell in next_row if not _is_empty(cell)):
            return idx

    return 0


# ── Coercion ────────────────────────────────────────────────────

def parse_number(value: Any) -> Optional[float]:
    """'$1,234.50' -> 1234.5, '12%' -> 12.0; anything unparseable -> None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _NUMBER_STRIP_RE.sub("", str(value))
        if not text:
            return None
        try:
            number = float(text)
        except (ValueError, TypeError):
            return None
    if not math.isfinite(number):
        return None
    return number


def parse_date(value: Any, dayfirst: bool = False) -> Optional[str]:
    """Normalize a cell to 'YYYY-MM-DD'; unparseable -> None"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text:
        return None

    if _ISO_DATE_RE.match(text):
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            return None

    # Bare numbers are not dates (dateutil would read "2024" as a year)
    if _PURE_NUMBER_RE.match(text):
        return None

    try:
        return date_parser.parse(text, dayfirst=dayfirst).date().isoformat()
    except (ValueError, OverflowError):
        return None


def parse_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ── Record construction ─────────────────────────────────────────

@dataclass
class MappingResult:
    """Outcome of transforming one sheet grid."""
    records: List[Record] = field(default_factory=list)
    header_row_index: int = 0
    headers: List[str] = field(default_factory=list)
    rows_processed: int = 0
    rows_skipped: int = 0


def _cell(row: Sequence[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


class MappingEngine:
    """Builds typed records from a raw grid according to a source's column mappings."""

    def __init__(self, scan_limit: int = None, dayfirst: bool = None):
        self.scan_limit = scan_limit or settings.header_scan_rows
        self.dayfirst = settings.date_dayfirst if dayfirst is None else dayfirst

    def transform(self, grid: Sequence[Sequence[Any]], source: SourceConfig, project_id: str) -> MappingResult:
        source.validate_for_sync()

        header_idx = detect_header_row(grid, self.scan_limit)
        result = MappingResult(
            header_row_index=header_idx,
            headers=[parse_string(cell) or "" for cell in grid[header_idx]] if grid else [],
        )

        data_rows = grid[header_idx + 1:]
        for offset, row in enumerate(data_rows):
            if all(_is_empty(cell) for cell in row):
                result.rows_skipped += 1
                continue

            result.rows_processed += 1
            try:
                if source.sync_mode == SyncMode.INDIVIDUAL:
                    record = self._build_individual(row, source, project_id)
                else:
                    record = self._build_aggregate(row, source, project_id)
            except ParseError as e:
                # Sheet row number for the log (1-based)
                log.debug(f"Skipping row {header_idx + offset + 2} of {source.id}: {e.message}")
                result.rows_skipped += 1
                continue
            result.records.append(record)

        log.info(
            f"Mapped {len(result.records)} {source.sync_mode.value} records from {source.id} "
            f"(header row {header_idx}, {result.rows_skipped} rows skipped)"
        )
        return result

    def _require_date(self, row, source: SourceConfig) -> date:
        letter = source.date_columns()[0]
        parsed = parse_date(_cell(row, column_letter_to_index(letter)), dayfirst=self.dayfirst)
        if parsed is None:
            raise ParseError(f"invalid or missing date in column {letter}")
        return date.fromisoformat(parsed)

    def _build_aggregate(self, row, source: SourceConfig, project_id: str) -> AggregateRecord:
        record = AggregateRecord(
            project_id=project_id,
            date=self._require_date(row, source),
            source_name=source.resolved_source_name,
        )

        for letter, mapping in source.column_mappings.items():
            if mapping.semantic_key == DATE_KEY:
                continue
            value = parse_number(_cell(row, column_letter_to_index(letter)))
            if value is None:
                continue
            if mapping.is_custom_metric or mapping.semantic_key not in PREDEFINED_METRICS:
                record.custom_data[mapping.display_name] = value
            else:
                record.metrics[mapping.semantic_key] = value

        return record

    def _build_individual(self, row, source: SourceConfig, project_id: str) -> IndividualRecord:
        record_id = parse_string(_cell(row, column_letter_to_index(source.unique_id_column)))
        if record_id is None:
            raise ParseError(f"missing unique id in column {source.unique_id_column}")

        record = IndividualRecord(
            project_id=project_id,
            source_name=source.resolved_source_name,
            record_id=record_id,
            date=self._require_date(row, source),
            record_type=source.record_type,
        )

        if source.amount_column:
            record.amount = parse_number(_cell(row, column_letter_to_index(source.amount_column)))
        if source.status_column:
            record.status = parse_string(_cell(row, column_letter_to_index(source.status_column)))

        reserved = {source.unique_id_column, source.amount_column, source.status_column}
        for letter, mapping in source.column_mappings.items():
            if mapping.semantic_key == DATE_KEY or letter in reserved:
                continue
            raw = _cell(row, column_letter_to_index(letter))
            if mapping.is_custom_metric or mapping.semantic_key not in PREDEFINED_METRICS:
                value = parse_string(raw)
                if value is not None:
                    record.record_data[mapping.display_name] = value
            else:
                value = parse_number(raw)
                if value is not None:
                    record.record_data[mapping.semantic_key] = value

        return record
