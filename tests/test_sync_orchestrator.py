"""
Orchestrator tests with fake Google collaborators: end-to-end aggregate
sync, idempotent replays, per-sheet failure isolation and status
write-back.
"""
import asyncio
from datetime import date

from conftest import FakeCredentialProvider, FakeSheetsAdapter

from sheetsync.exceptions import FetchError
from sheetsync.models.project_metrics import ProjectDailyMetric, ProjectIndividualRecord
from sheetsync.models.sync_config import ProjectSyncConfigRecord
from sheetsync.schemas.sync_config import (
    ColumnMapping,
    LegacySyncConfig,
    ProjectSyncConfig,
    SourceConfig,
    SyncMode,
    SyncStatus,
)
from sheetsync.services.config_store import ConfigStore
from sheetsync.services.sync_orchestrator import SyncOrchestrator
from sheetsync.utils.logger import log


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _source(source_id, sheets=("Daily",), **kwargs):
    return SourceConfig(
        id=source_id,
        sheets=list(sheets),
        column_mappings=kwargs.pop("column_mappings", {
            "A": ColumnMapping(semantic_key="date", display_name="Date"),
            "B": ColumnMapping(semantic_key="amount_spent", display_name="Amount Spent"),
        }),
        **kwargs,
    )


SPEND_GRID = [["Date", "Spend"], ["2024-01-01", "100"], ["2024-01-02", "200"]]


def _setup(session_factory, sources, grids, credentials=None):
    store = ConfigStore(session_factory)
    store.save_config(ProjectSyncConfig(project_id="proj", sources=sources))
    adapter = FakeSheetsAdapter(grids)
    orchestrator = SyncOrchestrator(
        store,
        credentials or FakeCredentialProvider(),
        lambda token: adapter,
        session_factory=session_factory,
    )
    return store, adapter, orchestrator


def _stored_metrics(session_factory):
    db = session_factory()
    try:
        rows = db.query(ProjectDailyMetric).order_by(ProjectDailyMetric.source, ProjectDailyMetric.date).all()
        return [(r.source, r.date, r.amount_spent) for r in rows]
    finally:
        db.close()


def test_end_to_end_aggregate_sync(session_factory):
    store, adapter, orchestrator = _setup(session_factory, [_source("src")], {("src", "Daily"): SPEND_GRID})

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is True
    assert (result.inserted, result.updated, result.errors) == (2, 0, 0)
    assert adapter.requests == [("src", "'Daily'!A1:Z1000")]
    assert _stored_metrics(session_factory) == [
        ("google_sheets:src", date(2024, 1, 1), 100.0),
        ("google_sheets:src", date(2024, 1, 2), 200.0),
    ]

    config = store.get_config("proj")
    assert config.last_sync_status == SyncStatus.SUCCESS
    assert config.last_sync_error is None
    assert config.last_sync_at is not None


def test_second_sync_of_unchanged_sheet_is_idempotent(session_factory):
    _, _, orchestrator = _setup(session_factory, [_source("src")], {("src", "Daily"): SPEND_GRID})

    _run(orchestrator.sync_project("proj"))
    before = _stored_metrics(session_factory)
    second = _run(orchestrator.sync_project("proj"))

    assert second.success is True
    assert (second.inserted, second.updated) == (0, 2)
    assert _stored_metrics(session_factory) == before


def test_failing_source_does_not_stop_the_others(session_factory):
    _, _, orchestrator = _setup(
        session_factory,
        [_source("broken"), _source("healthy")],
        {
            ("broken", "Daily"): FetchError("HTTP 503"),
            ("healthy", "Daily"): SPEND_GRID,
        },
    )

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert result.inserted == 2
    units = {u.source_id: u for u in result.units}
    assert units["broken"].success is False
    assert units["broken"].error == "HTTP 503"
    assert units["healthy"].success is True
    assert [row[0] for row in _stored_metrics(session_factory)] == ["google_sheets:healthy"] * 2


def test_first_unit_error_is_written_back(session_factory):
    store, _, orchestrator = _setup(
        session_factory,
        [_source("src", sheets=("Daily", "Missing", "Empty"))],
        {("src", "Daily"): SPEND_GRID, ("src", "Empty"): []},
    )

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert [(u.sheet_name, u.success) for u in result.units] == [
        ("Daily", True), ("Missing", False), ("Empty", False),
    ]
    assert result.units[2].error == "No data found in sheet"
    config = store.get_config("proj")
    assert config.last_sync_status == SyncStatus.ERROR
    assert config.last_sync_error.startswith("src/Missing:")


def test_unexpected_unit_exception_is_isolated(session_factory):
    _, _, orchestrator = _setup(
        session_factory,
        [_source("src", sheets=("Boom", "Daily"))],
        {("src", "Boom"): RuntimeError("socket closed"), ("src", "Daily"): SPEND_GRID},
    )

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert result.units[0].error == "socket closed"
    assert result.units[1].inserted == 2


def test_auth_error_fails_the_whole_run_before_fetching(session_factory):
    store, adapter, orchestrator = _setup(
        session_factory,
        [_source("src")],
        {("src", "Daily"): SPEND_GRID},
        credentials=FakeCredentialProvider(error="refresh token revoked"),
    )

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert result.error == "refresh token revoked"
    assert result.units == []
    assert adapter.requests == []
    config = store.get_config("proj")
    assert config.last_sync_status == SyncStatus.ERROR
    assert config.last_sync_error == "refresh token revoked"


def test_invalid_source_config_fails_only_that_source(session_factory):
    store, adapter, orchestrator = _setup(
        session_factory,
        [_source("ok")],
        {("ok", "Daily"): SPEND_GRID, ("bad", "Daily"): SPEND_GRID},
    )
    # Saved directly so the store-level validation is bypassed
    bad = _source("bad", sheets=("Daily", "Other"), column_mappings={
        "B": ColumnMapping(semantic_key="amount_spent", display_name="Amount Spent"),
    })
    config = store.get_config("proj")
    config.sources.append(bad)
    db = session_factory()
    try:
        row = db.query(ProjectSyncConfigRecord).filter_by(project_id="proj").one()
        row.config = {"sources": [s.model_dump(mode="json") for s in config.sources]}
        db.commit()
    finally:
        db.close()

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    failed = [u for u in result.units if not u.success]
    assert [(u.source_id, u.sheet_name) for u in failed] == [("bad", "Daily"), ("bad", "Other")]
    assert ("bad", "'Daily'!A1:Z1000") not in adapter.requests
    assert result.inserted == 2


def test_inactive_sources_are_skipped(session_factory):
    _, adapter, orchestrator = _setup(
        session_factory,
        [_source("on"), _source("off", is_active=False)],
        {("on", "Daily"): SPEND_GRID, ("off", "Daily"): SPEND_GRID},
    )

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is True
    assert [u.source_id for u in result.units] == ["on"]
    assert [r[0] for r in adapter.requests] == ["on"]


def test_missing_config_is_a_structured_failure(session_factory):
    orchestrator = SyncOrchestrator(
        ConfigStore(session_factory),
        FakeCredentialProvider(),
        lambda token: FakeSheetsAdapter(),
        session_factory=session_factory,
    )

    result = _run(orchestrator.sync_project("ghost"))

    assert result.success is False
    assert "No sync configuration" in result.error


def test_individual_mode_sync(session_factory):
    source = _source(
        "sales",
        sheets=("Closes",),
        sync_mode=SyncMode.INDIVIDUAL,
        unique_id_column="A",
        record_type="sale",
        amount_column="C",
        column_mappings={"B": ColumnMapping(semantic_key="date", display_name="Date")},
    )
    grid = [["ID", "Date", "Amount"], ["S-1", "2024-01-01", "10"], ["", "2024-01-02", "20"], ["S-3", "2024-01-03", "30"]]
    _, _, orchestrator = _setup(session_factory, [source], {("sales", "Closes"): grid})

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is True
    assert result.inserted == 2
    db = session_factory()
    try:
        ids = sorted(r.record_id for r in db.query(ProjectIndividualRecord).all())
    finally:
        db.close()
    assert ids == ["S-1", "S-3"]


def test_each_run_writes_history(session_factory):
    store, _, orchestrator = _setup(session_factory, [_source("src")], {("src", "Daily"): SPEND_GRID})

    _run(orchestrator.sync_project("proj", "scheduled"))

    (entry,) = store.get_history("proj")
    assert entry["sync_type"] == "scheduled"
    assert entry["status"] == "success"
    assert entry["rows_inserted"] == 2
    assert entry["sheets_synced"] == 1
    assert entry["details"][0]["sheet_name"] == "Daily"


def test_unmigratable_legacy_config_is_a_structured_failure(session_factory):
    store = ConfigStore(session_factory)
    store.save_legacy_config(LegacySyncConfig(
        project_id="proj",
        spreadsheet_id="legacy-sheet",
        sheet_name="Sheet1",
        date_column="A1",
    ))
    adapter = FakeSheetsAdapter({("legacy-sheet", "Sheet1"): SPEND_GRID})
    orchestrator = SyncOrchestrator(store, FakeCredentialProvider(), lambda token: adapter, session_factory=session_factory)

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert result.error.startswith("Invalid sync configuration")
    assert adapter.requests == []

    db = session_factory()
    try:
        row = db.query(ProjectSyncConfigRecord).filter_by(project_id="proj").one()
        assert row.last_sync_status == "error"
        assert row.last_sync_error == result.error
    finally:
        db.close()


class LockedHistoryStore(ConfigStore):
    def start_history(self, project_id, sync_type):
        raise RuntimeError("database is locked")


def test_failure_to_record_sync_start_is_a_structured_failure(session_factory):
    store = LockedHistoryStore(session_factory)
    store.save_config(ProjectSyncConfig(project_id="proj", sources=[_source("src")]))
    adapter = FakeSheetsAdapter({("src", "Daily"): SPEND_GRID})
    orchestrator = SyncOrchestrator(store, FakeCredentialProvider(), lambda token: adapter, session_factory=session_factory)

    result = _run(orchestrator.sync_project("proj"))

    assert result.success is False
    assert "database is locked" in result.error
    assert adapter.requests == []


def test_log_records_during_a_sync_carry_the_project_id(session_factory):
    _, _, orchestrator = _setup(session_factory, [_source("src")], {("src", "Daily"): SPEND_GRID})
    seen = []
    handler_id = log.add(lambda message: seen.append(message.record["extra"]["project_id"]), level="INFO")
    try:
        _run(orchestrator.sync_project("proj"))
    finally:
        log.remove(handler_id)

    assert seen
    assert set(seen) == {"proj"}
