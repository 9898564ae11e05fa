"""
Config Store

Persists one sync configuration per project, migrates legacy (v1)
single-spreadsheet configs to the multi-source schema the first time
they are read, and records per-run sync history.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from sheetsync.config import get_settings
from sheetsync.exceptions import ConfigError
from sheetsync.models.base import SessionLocal
from sheetsync.models.sync_config import ProjectSyncConfigRecord, SyncHistory
from sheetsync.schemas.sync_config import (
    CURRENT_SCHEMA_VERSION,
    LEGACY_SCHEMA_VERSION,
    LegacySyncConfig,
    ProjectSyncConfig,
    SyncStatus,
    migrate_v1_to_v2,
)
from sheetsync.utils.logger import log

settings = get_settings()


class ConfigStore:
    """Project sync configuration and history persistence."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    # ── Configs ─────────────────────────────────────────────────

    def save_config(self, config: ProjectSyncConfig) -> ProjectSyncConfig:
        """
        Create or replace a project's configuration.

        Every active source must be syncable (ConfigError otherwise).
        Last-run status fields are owned by the orchestrator and are
        kept from the stored row.
        """
        for source in config.active_sources():
            source.validate_for_sync()

        db = self.session_factory()
        try:
            row = self._get_row(db, config.project_id)
            if row is None:
                row = ProjectSyncConfigRecord(project_id=config.project_id)
                db.add(row)
                log.info(f"Creating sync config for project {config.project_id}")
            else:
                log.info(f"Updating sync config for project {config.project_id}")

            row.schema_version = CURRENT_SCHEMA_VERSION
            row.config = self._dump_sources(config)
            row.auto_sync_enabled = config.auto_sync_enabled
            row.interval_minutes = config.interval_minutes
            db.commit()
            db.refresh(row)
            return self._to_config(row)
        finally:
            db.close()

    def save_legacy_config(self, legacy: LegacySyncConfig) -> None:
        """Store a v1 config as-is; it is migrated on its next read."""
        db = self.session_factory()
        try:
            row = self._get_row(db, legacy.project_id)
            if row is None:
                row = ProjectSyncConfigRecord(project_id=legacy.project_id)
                db.add(row)
            row.schema_version = LEGACY_SCHEMA_VERSION
            row.config = legacy.model_dump(mode="json")
            row.auto_sync_enabled = legacy.is_active and legacy.sync_frequency_minutes > 0
            row.interval_minutes = legacy.sync_frequency_minutes or settings.default_sync_interval_minutes
            db.commit()
        finally:
            db.close()

    def get_config(self, project_id: str) -> Optional[ProjectSyncConfig]:
        db = self.session_factory()
        try:
            row = self._get_row(db, project_id)
            if row is None:
                return None
            if row.schema_version == LEGACY_SCHEMA_VERSION:
                return self._migrate_row(db, row)
            return self._to_config(row)
        finally:
            db.close()

    def delete_config(self, project_id: str) -> bool:
        db = self.session_factory()
        try:
            row = self._get_row(db, project_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            log.info(f"Deleted sync config for project {project_id}")
            return True
        finally:
            db.close()

    def list_auto_sync_configs(self) -> List[ProjectSyncConfig]:
        """Every config with auto-sync enabled (legacy rows are migrated on the way)."""
        db = self.session_factory()
        try:
            rows = db.query(ProjectSyncConfigRecord).filter(
                ProjectSyncConfigRecord.auto_sync_enabled.is_(True)
            ).all()
            configs = []
            for row in rows:
                if row.schema_version != LEGACY_SCHEMA_VERSION:
                    configs.append(self._to_config(row))
                    continue
                try:
                    configs.append(self._migrate_row(db, row))
                except ConfigError as e:
                    # Left as v1 so it is reported again on the next read
                    log.error(f"Not scheduling project {row.project_id}: {e.message}")
            return configs
        finally:
            db.close()

    def update_sync_status(
        self,
        project_id: str,
        status: SyncStatus,
        error: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        db = self.session_factory()
        try:
            row = self._get_row(db, project_id)
            if row is None:
                log.warning(f"No sync config for project {project_id}; status {status.value} not recorded")
                return
            row.last_sync_status = status.value
            row.last_sync_error = error
            if status != SyncStatus.SYNCING:
                row.last_sync_at = synced_at or datetime.utcnow()
            db.commit()
        finally:
            db.close()

    # ── History ─────────────────────────────────────────────────

    def start_history(self, project_id: str, sync_type: str) -> int:
        db = self.session_factory()
        try:
            entry = SyncHistory(
                project_id=project_id,
                sync_type=sync_type,
                status="running",
                started_at=datetime.utcnow(),
            )
            db.add(entry)
            db.commit()
            return entry.id
        finally:
            db.close()

    def finish_history(
        self,
        history_id: int,
        status: str,
        sheets_synced: int = 0,
        rows_processed: int = 0,
        rows_inserted: int = 0,
        rows_updated: int = 0,
        rows_errored: int = 0,
        error_message: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        db = self.session_factory()
        try:
            entry = db.query(SyncHistory).filter(SyncHistory.id == history_id).first()
            if entry is None:
                return
            entry.status = status
            entry.sheets_synced = sheets_synced
            entry.rows_processed = rows_processed
            entry.rows_inserted = rows_inserted
            entry.rows_updated = rows_updated
            entry.rows_errored = rows_errored
            entry.error_message = error_message
            entry.details = details
            entry.completed_at = datetime.utcnow()
            db.commit()
        finally:
            db.close()

    def get_history(self, project_id: str, limit: int = None) -> List[Dict[str, Any]]:
        limit = limit or settings.sync_history_limit
        db = self.session_factory()
        try:
            entries = db.query(SyncHistory).filter(
                SyncHistory.project_id == project_id
            ).order_by(SyncHistory.started_at.desc(), SyncHistory.id.desc()).limit(limit).all()
            return [
                {
                    "id": e.id,
                    "sync_type": e.sync_type,
                    "status": e.status,
                    "sheets_synced": e.sheets_synced,
                    "rows_processed": e.rows_processed,
                    "rows_inserted": e.rows_inserted,
                    "rows_updated": e.rows_updated,
                    "rows_errored": e.rows_errored,
                    "error_message": e.error_message,
                    "details": e.details,
                    "started_at": e.started_at.isoformat() if e.started_at else None,
                    "completed_at": e.completed_at.isoformat() if e.completed_at else None,
                }
                for e in entries
            ]
        finally:
            db.close()

    # ── Internals ───────────────────────────────────────────────

    @staticmethod
    def _get_row(db: Session, project_id: str) -> Optional[ProjectSyncConfigRecord]:
        return db.query(ProjectSyncConfigRecord).filter(
            ProjectSyncConfigRecord.project_id == project_id
        ).first()

    @staticmethod
    def _dump_sources(config: ProjectSyncConfig) -> Dict[str, Any]:
        return {"sources": [source.model_dump(mode="json") for source in config.sources]}

    @staticmethod
    def _to_config(row: ProjectSyncConfigRecord) -> ProjectSyncConfig:
        return ProjectSyncConfig(
            schema_version=row.schema_version,
            project_id=row.project_id,
            sources=(row.config or {}).get("sources", []),
            auto_sync_enabled=bool(row.auto_sync_enabled),
            interval_minutes=row.interval_minutes or settings.default_sync_interval_minutes,
            last_sync_at=row.last_sync_at,
            last_sync_status=row.last_sync_status,
            last_sync_error=row.last_sync_error,
        )

    def _migrate_row(self, db: Session, row: ProjectSyncConfigRecord) -> ProjectSyncConfig:
        """
        Rewrite a v1 row as v2 in place (runs once per project).

        A row that cannot be migrated raises ConfigError and is left at v1.
        """
        try:
            legacy = LegacySyncConfig(**{
                **row.config,
                "project_id": row.project_id,
                "last_sync_at": row.last_sync_at,
                "last_sync_status": row.last_sync_status,
                "last_sync_error": row.last_sync_error,
            })
        except ValidationError as e:
            raise ConfigError(
                f"Legacy sync config for project {row.project_id} is malformed: {e.errors()[0]['msg']}",
                details={"project_id": row.project_id},
            ) from e
        migrated = migrate_v1_to_v2(legacy)

        row.schema_version = CURRENT_SCHEMA_VERSION
        row.config = self._dump_sources(migrated)
        row.auto_sync_enabled = migrated.auto_sync_enabled
        row.interval_minutes = migrated.interval_minutes
        db.commit()
        db.refresh(row)

        log.info(f"Migrated legacy sync config for project {row.project_id} to schema v{CURRENT_SCHEMA_VERSION}")
        return self._to_config(row)
