"""
Sync Engine

Public entry point used by the HTTP layer: wires the config store,
orchestrator and scheduler together and keeps the job table in step
with each project's auto-sync settings.
"""
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from sheetsync.connectors.base import SourceAdapter
from sheetsync.connectors.google_oauth import GoogleCredentialProvider
from sheetsync.connectors.google_sheets import GoogleSheetsAdapter, build_range
from sheetsync.config import get_settings
from sheetsync.exceptions import ConfigError, SyncError
from sheetsync.models.base import SessionLocal
from sheetsync.models.project_metrics import ProjectDailyMetric, ProjectIndividualRecord
from sheetsync.schemas.sync_config import ProjectSyncConfig
from sheetsync.scheduler import JobMode, SyncScheduler
from sheetsync.services.column_mapping import detect_header_row, index_to_column_letter
from sheetsync.services.config_store import ConfigStore
from sheetsync.services.sync_orchestrator import MANUAL, SCHEDULED, ProjectSyncResult, SyncOrchestrator
from sheetsync.utils.logger import log

settings = get_settings()


class SyncEngine:
    """Config, manual/scheduled sync and job management for all projects."""

    def __init__(
        self,
        session_factory=None,
        credential_provider=None,
        adapter_factory: Callable[[str], SourceAdapter] = None,
        clock=None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.config_store = ConfigStore(self.session_factory)
        self.credential_provider = credential_provider or GoogleCredentialProvider(self.session_factory)
        self.adapter_factory = adapter_factory or GoogleSheetsAdapter
        self.orchestrator = SyncOrchestrator(
            self.config_store,
            self.credential_provider,
            self.adapter_factory,
            session_factory=self.session_factory,
        )
        self.scheduler = SyncScheduler(self._run_scheduled, clock=clock)

    # ── Lifecycle ───────────────────────────────────────────────

    def load_jobs(self) -> int:
        """Schedule every config with auto-sync enabled, from its last sync time."""
        configs = self.config_store.list_auto_sync_configs()
        for config in configs:
            self.scheduler.add_or_update_job(
                config.project_id,
                JobMode.MULTI,
                config.interval_minutes,
                last_run=config.last_sync_at,
            )
        return len(configs)

    def start(self):
        loaded = self.load_jobs()
        self.scheduler.start()
        log.info(f"Sync engine started ({loaded} auto-sync projects)")

    def shutdown(self):
        self.scheduler.shutdown()

    # ── Configs ─────────────────────────────────────────────────

    def save_config(self, config: ProjectSyncConfig) -> ProjectSyncConfig:
        """Persist a config and add, update or remove its auto-sync job to match."""
        saved = self.config_store.save_config(config)
        if saved.auto_sync_enabled and saved.active_sources():
            self.scheduler.add_or_update_job(
                saved.project_id, JobMode.MULTI, saved.interval_minutes, last_run=saved.last_sync_at,
            )
        else:
            self.scheduler.remove_job(saved.project_id, JobMode.MULTI)
        return saved

    def get_config(self, project_id: str) -> Optional[ProjectSyncConfig]:
        return self.config_store.get_config(project_id)

    def delete_config(self, project_id: str) -> bool:
        self.scheduler.remove_project_jobs(project_id)
        return self.config_store.delete_config(project_id)

    def get_history(self, project_id: str, limit: int = None) -> List[Dict[str, Any]]:
        return self.config_store.get_history(project_id, limit)

    # ── Sync ────────────────────────────────────────────────────

    async def sync_now(self, project_id: str) -> ProjectSyncResult:
        """Manual sync through the same path as scheduled runs."""
        return await self.orchestrator.sync_project(project_id, MANUAL)

    async def _run_scheduled(self, project_id: str, sync_type: str = SCHEDULED) -> ProjectSyncResult:
        return await self.orchestrator.sync_project(project_id, sync_type)

    # ── Jobs ────────────────────────────────────────────────────

    def add_or_update_job(self, project_id: str, mode: JobMode = JobMode.MULTI, interval_minutes: int = None) -> Dict[str, Any]:
        try:
            config = self.config_store.get_config(project_id)
        except ConfigError as e:
            log.warning(f"Scheduling {project_id} without a last sync time: {e.message}")
            config = None
        last_run = config.last_sync_at if config else None
        return self.scheduler.add_or_update_job(project_id, mode, interval_minutes, last_run=last_run).to_dict()

    def remove_job(self, project_id: str, mode: JobMode = JobMode.MULTI) -> bool:
        return self.scheduler.remove_job(project_id, mode)

    def get_job_status(self, project_id: str, mode: JobMode = JobMode.MULTI) -> Optional[Dict[str, Any]]:
        return self.scheduler.get_job_status(project_id, mode)

    # ── Read side ───────────────────────────────────────────────

    async def preview_sheet(self, project_id: str, source_id: str, sheet_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Sheet titles of a source, plus the detected header of one sheet

        Headers are echoed with their column letters so mappings can be
        configured against them. Failures come back as {"success": False}.
        """
        try:
            token = await self.credential_provider.get_valid_access_token(project_id)
            adapter = self.adapter_factory(token)
            titles = await adapter.list_sheet_titles(source_id)
            sheet_name = sheet_name or (titles[0] if titles else None)
            if sheet_name is None:
                return {"success": False, "error": "Spreadsheet has no sheets"}

            grid = await adapter.fetch_rows(source_id, build_range(sheet_name))
        except SyncError as e:
            return {"success": False, "error": e.message}

        header_idx = detect_header_row(grid, settings.header_scan_rows)
        header = grid[header_idx] if grid else []
        return {
            "success": True,
            "sheets": titles,
            "sheet_name": sheet_name,
            "header_row_index": header_idx,
            "columns": [
                {"letter": index_to_column_letter(i), "header": str(cell).strip()}
                for i, cell in enumerate(header)
            ],
            "sample_rows": grid[header_idx + 1:header_idx + 6],
        }

    def get_metrics(self, project_id: str, start_date: date = None, end_date: date = None) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(ProjectDailyMetric).filter(ProjectDailyMetric.project_id == project_id)
            if start_date:
                query = query.filter(ProjectDailyMetric.date >= start_date)
            if end_date:
                query = query.filter(ProjectDailyMetric.date <= end_date)
            rows = query.order_by(ProjectDailyMetric.date, ProjectDailyMetric.source).all()
            return [_row_dict(row, exclude=("id",)) for row in rows]
        finally:
            db.close()

    def get_records(
        self,
        project_id: str,
        record_type: str = None,
        start_date: date = None,
        end_date: date = None,
    ) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(ProjectIndividualRecord).filter(ProjectIndividualRecord.project_id == project_id)
            if record_type:
                query = query.filter(ProjectIndividualRecord.record_type == record_type)
            if start_date:
                query = query.filter(ProjectIndividualRecord.date >= start_date)
            if end_date:
                query = query.filter(ProjectIndividualRecord.date <= end_date)
            rows = query.order_by(ProjectIndividualRecord.date, ProjectIndividualRecord.record_id).all()
            return [_row_dict(row, exclude=("id",)) for row in rows]
        finally:
            db.close()


def _row_dict(row, exclude=()) -> Dict[str, Any]:
    result = {}
    for column in row.__table__.columns:
        if column.name in exclude:
            continue
        value = getattr(row, column.name)
        result[column.name] = value.isoformat() if hasattr(value, "isoformat") else value
    return result
