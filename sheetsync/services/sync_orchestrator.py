"""
Multi-Source Sync Orchestrator

Runs one project's sync: every active source and each of its selected
sheets is a unit processed as fetch -> map -> merge. A failing unit is
recorded and the remaining units still run, so a partial failure keeps
the progress of the units that succeeded. Credential failures stop the
whole run before anything is fetched.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sheetsync.connectors.base import SourceAdapter
from sheetsync.connectors.google_sheets import build_range
from sheetsync.exceptions import AuthError, ConfigError, FetchError, SyncError
from sheetsync.models.base import SessionLocal
from sheetsync.schemas.sync_config import SourceConfig, SyncStatus
from sheetsync.services.column_mapping import MappingEngine
from sheetsync.services.config_store import ConfigStore
from sheetsync.services.merge_service import MergeService
from sheetsync.utils.logger import log

MANUAL = "manual"
SCHEDULED = "scheduled"


@dataclass
class UnitResult:
    """Outcome of one (source, sheet) unit"""
    source_id: str
    sheet_name: Optional[str]
    success: bool = True
    rows_processed: int = 0
    rows_skipped: int = 0
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    error: Optional[str] = None


@dataclass
class ProjectSyncResult:
    """Outcome of a whole project run; counts are summed over all units"""
    project_id: str
    sync_type: str = MANUAL
    success: bool = False
    units: List[UnitResult] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    rows_processed: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def sheets_synced(self) -> int:
        return sum(1 for unit in self.units if unit.success)

    def add(self, unit: UnitResult):
        self.units.append(unit)
        self.inserted += unit.inserted
        self.updated += unit.updated
        self.errors += unit.errors
        self.rows_processed += unit.rows_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "sync_type": self.sync_type,
            "success": self.success,
            "inserted": self.inserted,
            "updated": self.updated,
            "errors": self.errors,
            "rows_processed": self.rows_processed,
            "sheets_synced": self.sheets_synced,
            "error": self.error,
            "units": [asdict(unit) for unit in self.units],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class SyncOrchestrator:
    """
    Syncs every active source/sheet of a project and writes the run's
    status back to its config.

    Args:
        config_store: Config and history persistence
        credential_provider: Object with `await get_valid_access_token(project_id)`
        adapter_factory: Builds a SourceAdapter from an access token
        session_factory: Sessions for record merges
    """

    def __init__(
        self,
        config_store: ConfigStore,
        credential_provider,
        adapter_factory: Callable[[str], SourceAdapter],
        session_factory=None,
        mapping_engine: MappingEngine = None,
    ):
        self.config_store = config_store
        self.credential_provider = credential_provider
        self.adapter_factory = adapter_factory
        self.session_factory = session_factory or SessionLocal
        self.mapping_engine = mapping_engine or MappingEngine()

    async def sync_project(self, project_id: str, sync_type: str = MANUAL) -> ProjectSyncResult:
        """Run every active unit of a project; never raises, failures come back in the result."""
        with log.contextualize(project_id=project_id):
            return await self._sync_project(project_id, sync_type)

    async def _sync_project(self, project_id: str, sync_type: str) -> ProjectSyncResult:
        result = ProjectSyncResult(project_id=project_id, sync_type=sync_type, started_at=datetime.utcnow())

        try:
            config = self.config_store.get_config(project_id)
        except ConfigError as e:
            self._fail(result, f"Invalid sync configuration: {e.message}")
            self._write_back(result, history_id=None)
            return result
        except Exception as e:
            log.exception(f"Loading sync config for project {project_id} failed")
            return self._fail(result, f"Failed to load sync configuration: {e}")

        if config is None:
            return self._fail(result, f"No sync configuration for project {project_id}")

        log.info(f"Starting {sync_type} sync for project {project_id}")
        try:
            history_id = self.config_store.start_history(project_id, sync_type)
            self.config_store.update_sync_status(project_id, SyncStatus.SYNCING)
        except Exception as e:
            log.exception(f"Recording sync start for project {project_id} failed")
            return self._fail(result, f"Failed to record sync start: {e}")

        try:
            await self._run_units(config.active_sources(), project_id, result)
        except AuthError as e:
            result.error = e.message
            log.error(f"Sync for project {project_id} aborted: {e.message}")
        except Exception as e:
            result.error = f"Unexpected sync failure: {e}"
            log.exception(f"Sync for project {project_id} failed unexpectedly")

        if result.error is None:
            if not result.units:
                result.error = "No active spreadsheets configured"
            else:
                first_failure = next((u for u in result.units if not u.success), None)
                if first_failure is not None:
                    result.error = self._describe(first_failure)

        result.success = result.error is None
        result.completed_at = datetime.utcnow()
        self._write_back(result, history_id)

        log.info(
            f"Finished {sync_type} sync for project {project_id}: "
            f"success={result.success}, {result.inserted} inserted, {result.updated} updated, "
            f"{result.errors} errors across {len(result.units)} sheets"
        )
        return result

    async def _run_units(self, sources: List[SourceConfig], project_id: str, result: ProjectSyncResult):
        if not sources:
            return

        token = await self.credential_provider.get_valid_access_token(project_id)
        adapter = self.adapter_factory(token)

        for source in sources:
            try:
                source.validate_for_sync()
            except ConfigError as e:
                log.warning(f"Skipping source {source.id}: {e.message}")
                for sheet_name in source.sheets or [None]:
                    result.add(UnitResult(source.id, sheet_name, success=False, error=e.message))
                continue

            if not source.sheets:
                result.add(UnitResult(source.id, None, success=False, error="No sheets selected"))
                continue

            for sheet_name in source.sheets:
                result.add(await self._sync_unit(adapter, source, sheet_name, project_id))

    async def _sync_unit(self, adapter: SourceAdapter, source: SourceConfig, sheet_name: str, project_id: str) -> UnitResult:
        unit = UnitResult(source.id, sheet_name)
        try:
            grid = await adapter.fetch_rows(source.id, build_range(sheet_name))
            if not grid:
                raise FetchError("No data found in sheet", details={"source_id": source.id, "sheet": sheet_name})

            mapped = self.mapping_engine.transform(grid, source, project_id)
            unit.rows_processed = mapped.rows_processed
            unit.rows_skipped = mapped.rows_skipped

            db = self.session_factory()
            try:
                counts = MergeService(db).merge(mapped.records)
            finally:
                db.close()

            unit.inserted = counts.inserted
            unit.updated = counts.updated
            unit.errors = counts.errors
        except AuthError:
            raise
        except SyncError as e:
            unit.success = False
            unit.error = e.message
            log.warning(f"Sheet '{sheet_name}' of {source.id} failed: {e.message}")
        except Exception as e:
            unit.success = False
            unit.error = str(e)
            log.exception(f"Sheet '{sheet_name}' of {source.id} failed unexpectedly")
        return unit

    @staticmethod
    def _describe(unit: UnitResult) -> str:
        where = f"{unit.source_id}/{unit.sheet_name}" if unit.sheet_name else unit.source_id
        return f"{where}: {unit.error}"

    @staticmethod
    def _fail(result: ProjectSyncResult, error: str) -> ProjectSyncResult:
        result.error = error
        result.success = False
        result.completed_at = datetime.utcnow()
        log.warning(f"Sync for project {result.project_id} not run: {error}")
        return result

    def _write_back(self, result: ProjectSyncResult, history_id: Optional[int]):
        """Record the outcome on the config and the history row; failures here are logged only."""
        status = SyncStatus.SUCCESS if result.success else SyncStatus.ERROR
        try:
            self.config_store.update_sync_status(
                result.project_id, status, error=result.error, synced_at=result.completed_at,
            )
        except Exception:
            log.exception(f"Writing sync status for project {result.project_id} failed")

        if history_id is None:
            return
        try:
            self.config_store.finish_history(
                history_id,
                status=status.value,
                sheets_synced=result.sheets_synced,
                rows_processed=result.rows_processed,
                rows_inserted=result.inserted,
                rows_updated=result.updated,
                rows_errored=result.errors,
                error_message=result.error,
                details=[asdict(unit) for unit in result.units],
            )
        except Exception:
            log.exception(f"Writing sync history {history_id} failed")
