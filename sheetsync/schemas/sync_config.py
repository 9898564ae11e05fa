"""
Sync configuration schemas

Typed project/source configuration plus the legacy (schema v1)
single-spreadsheet shape and its pure migration to the current schema.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from sheetsync.exceptions import ConfigError

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1

DATE_KEY = "date"
SOURCE_NAME_PREFIX = "google_sheets"

_COLUMN_LETTER_RE = re.compile(r"^[A-Z]+$")

# Predefined metric slots: semantic key -> display name
PREDEFINED_METRICS: Dict[str, str] = {
    "outbound_clicks": "Outbound Clicks",
    "amount_spent": "Amount Spent",
    "outbound_ctr": "Outbound CTR",
    "cpm": "CPM",
    "cpc": "CPC",
    "impressions": "Impressions",
    "reach": "Reach",
    "frequency": "Frequency",
    "conversions": "Conversions",
    "conversion_rate": "Conversion Rate",
    "cost_per_conversion": "Cost per Conversion",
    "revenue": "Revenue",
    "roas": "ROAS",
}


class SyncMode(str, Enum):
    AGGREGATE = "aggregate"
    INDIVIDUAL = "individual"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SYNCING = "syncing"


def _normalize_letter(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    letter = value.strip().upper()
    if not letter:
        return None
    if not _COLUMN_LETTER_RE.match(letter):
        raise ValueError(f"Invalid column letter: {value!r}")
    return letter


class ColumnMapping(BaseModel):
    """What a single spreadsheet column maps to."""
    semantic_key: str
    display_name: str
    is_custom_metric: bool = False


class SourceConfig(BaseModel):
    """One spreadsheet, its selected sheets and how its columns map."""
    id: str = Field(..., min_length=1)  # Spreadsheet ID
    name: Optional[str] = None
    sheets: List[str] = Field(default_factory=list)
    column_mappings: Dict[str, ColumnMapping] = Field(default_factory=dict)
    sync_mode: SyncMode = SyncMode.AGGREGATE
    is_active: bool = True
    source_name: Optional[str] = None

    # Individual-record mode only
    unique_id_column: Optional[str] = None
    record_type: Optional[str] = None
    amount_column: Optional[str] = None
    status_column: Optional[str] = None

    @field_validator("column_mappings")
    @classmethod
    def _normalize_mapping_letters(cls, value: Dict[str, ColumnMapping]) -> Dict[str, ColumnMapping]:
        normalized = {}
        for letter, mapping in value.items():
            key = _normalize_letter(letter)
            if key is None:
                raise ValueError("Column mapping keys must be non-empty column letters")
            normalized[key] = mapping
        return normalized

    @field_validator("unique_id_column", "amount_column", "status_column")
    @classmethod
    def _normalize_column(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_letter(value)

    @property
    def resolved_source_name(self) -> str:
        """Source component of the natural key for records from this spreadsheet."""
        return self.source_name or f"{SOURCE_NAME_PREFIX}:{self.id}"

    def date_columns(self) -> List[str]:
        return [
            letter for letter, mapping in self.column_mappings.items()
            if mapping.semantic_key == DATE_KEY
        ]

    def validate_for_sync(self) -> None:
        """
        Raise ConfigError unless this source can be synced in its mode.

        Both modes need exactly one date mapping; individual mode also
        needs a unique-id column and a record type.
        """
        date_columns = self.date_columns()
        if not date_columns:
            raise ConfigError(
                f"Source {self.id}: a date column mapping is required",
                details={"source_id": self.id},
            )
        if len(date_columns) > 1:
            raise ConfigError(
                f"Source {self.id}: exactly one date column mapping is allowed, found {', '.join(sorted(date_columns))}",
                details={"source_id": self.id, "date_columns": date_columns},
            )
        if self.sync_mode == SyncMode.INDIVIDUAL:
            if not self.unique_id_column or not self.record_type:
                raise ConfigError(
                    f"Source {self.id}: unique_id_column and record_type are required for individual records mode",
                    details={"source_id": self.id},
                )


class ProjectSyncConfig(BaseModel):
    """All sources of a project plus its auto-sync settings and last-run status."""
    schema_version: int = CURRENT_SCHEMA_VERSION
    project_id: str = Field(..., min_length=1)
    sources: List[SourceConfig] = Field(default_factory=list)
    auto_sync_enabled: bool = False
    interval_minutes: int = Field(60, gt=0)
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_error: Optional[str] = None

    @field_validator("sources")
    @classmethod
    def _unique_source_ids(cls, value: List[SourceConfig]) -> List[SourceConfig]:
        seen = set()
        for source in value:
            if source.id in seen:
                raise ValueError(f"Duplicate source id: {source.id}")
            seen.add(source.id)
        return value

    def active_sources(self) -> List[SourceConfig]:
        return [s for s in self.sources if s.is_active]


class LegacySyncConfig(BaseModel):
    """Schema v1: one spreadsheet, one sheet, one `<metric>_column` field per metric."""
    project_id: str
    spreadsheet_id: str
    spreadsheet_name: Optional[str] = None
    sheet_name: str
    date_column: str
    sync_mode: Optional[str] = None  # daily_aggregate | individual_records
    unique_id_column: Optional[str] = None
    record_type: Optional[str] = None
    amount_column: Optional[str] = None
    status_column: Optional[str] = None

    outbound_clicks_column: Optional[str] = None
    amount_spent_column: Optional[str] = None
    outbound_ctr_column: Optional[str] = None
    cpm_column: Optional[str] = None
    cpc_column: Optional[str] = None
    impressions_column: Optional[str] = None
    reach_column: Optional[str] = None
    frequency_column: Optional[str] = None
    conversions_column: Optional[str] = None
    conversion_rate_column: Optional[str] = None
    cost_per_conversion_column: Optional[str] = None
    revenue_column: Optional[str] = None
    roas_column: Optional[str] = None
    custom_metrics: Dict[str, str] = Field(default_factory=dict)  # metric name -> column letter

    is_active: bool = True
    sync_frequency_minutes: int = 0
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_error: Optional[str] = None


def _custom_metric_key(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    return slug or "custom_metric"


def migrate_v1_to_v2(legacy: LegacySyncConfig) -> ProjectSyncConfig:
    """
    Build the equivalent multi-source config from a legacy single-source config.

    Raises:
        ConfigError: The legacy fields do not make a valid v2 config
            (e.g. a column that is not a letter)
    """
    try:
        return _build_v2(legacy)
    except ValidationError as e:
        first = e.errors()[0]
        raise ConfigError(
            f"Legacy sync config for project {legacy.project_id} cannot be migrated: {first['msg']}",
            details={"project_id": legacy.project_id, "errors": len(e.errors())},
        ) from e


def _build_v2(legacy: LegacySyncConfig) -> ProjectSyncConfig:
    mappings: Dict[str, ColumnMapping] = {
        legacy.date_column.strip().upper(): ColumnMapping(semantic_key=DATE_KEY, display_name="Date"),
    }

    for metric_key, display_name in PREDEFINED_METRICS.items():
        letter = getattr(legacy, f"{metric_key}_column")
        if letter:
            mappings[letter.strip().upper()] = ColumnMapping(
                semantic_key=metric_key, display_name=display_name,
            )

    for metric_name, letter in legacy.custom_metrics.items():
        if letter:
            mappings[letter.strip().upper()] = ColumnMapping(
                semantic_key=_custom_metric_key(metric_name),
                display_name=metric_name,
                is_custom_metric=True,
            )

    mode = SyncMode.INDIVIDUAL if legacy.sync_mode in ("individual_records", "individual") else SyncMode.AGGREGATE

    source = SourceConfig(
        id=legacy.spreadsheet_id,
        name=legacy.spreadsheet_name or legacy.spreadsheet_id,
        sheets=[legacy.sheet_name],
        column_mappings=mappings,
        sync_mode=mode,
        is_active=legacy.is_active,
        unique_id_column=legacy.unique_id_column,
        record_type=legacy.record_type,
        amount_column=legacy.amount_column,
        status_column=legacy.status_column,
    )

    return ProjectSyncConfig(
        project_id=legacy.project_id,
        sources=[source],
        auto_sync_enabled=legacy.is_active and legacy.sync_frequency_minutes > 0,
        interval_minutes=legacy.sync_frequency_minutes if legacy.sync_frequency_minutes > 0 else 60,
        last_sync_at=legacy.last_sync_at,
        last_sync_status=legacy.last_sync_status,
        last_sync_error=legacy.last_sync_error,
    )
