"""
Spreadsheet sync endpoints

Per-project sync configuration, manual sync, history, auto-sync jobs,
synced data queries and sheet previews.
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sheetsync.exceptions import ConfigError
from sheetsync.schemas.sync_config import ProjectSyncConfig, SourceConfig
from sheetsync.scheduler import JobMode
from sheetsync.services.sync_engine import SyncEngine
from sheetsync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncConfigUpdate(BaseModel):
    sources: List[SourceConfig] = Field(default_factory=list)
    auto_sync_enabled: bool = False
    interval_minutes: int = Field(60, gt=0)


class JobUpdate(BaseModel):
    interval_minutes: int = Field(60, gt=0)


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


# ── Config ──────────────────────────────────────────────────────

@router.get("/projects/{project_id}/config")
def get_sync_config(project_id: str, engine: SyncEngine = Depends(get_engine)):
    """Project sync config (legacy configs are migrated on this read)"""
    try:
        config = engine.get_config(project_id)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail={"error": e.message, **e.details})
    if config is None:
        raise HTTPException(status_code=404, detail=f"No sync configuration for project {project_id}")
    return config.model_dump(mode="json")


@router.put("/projects/{project_id}/config")
def save_sync_config(project_id: str, body: SyncConfigUpdate, engine: SyncEngine = Depends(get_engine)):
    """
    Create or replace a project's sources and auto-sync settings.

    Enabling auto-sync schedules the project; disabling it removes the job.
    """
    try:
        config = ProjectSyncConfig(project_id=project_id, **body.model_dump())
        saved = engine.save_config(config)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail={"error": e.message, **e.details})
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "config": saved.model_dump(mode="json"),
        "job": engine.get_job_status(project_id, JobMode.MULTI),
    }


@router.delete("/projects/{project_id}/config")
def delete_sync_config(project_id: str, engine: SyncEngine = Depends(get_engine)):
    if not engine.delete_config(project_id):
        raise HTTPException(status_code=404, detail=f"No sync configuration for project {project_id}")
    return {"deleted": True, "project_id": project_id}


# ── Sync ────────────────────────────────────────────────────────

@router.post("/projects/{project_id}/run")
async def sync_project_now(project_id: str, engine: SyncEngine = Depends(get_engine)):
    """
    Run a manual sync and wait for it.

    Failures are reported in the body (`success: false`), not as HTTP errors.
    """
    log.info(f"Manual sync requested for project {project_id}")
    result = await engine.sync_now(project_id)
    return result.to_dict()


@router.get("/projects/{project_id}/history")
def get_sync_history(
    project_id: str,
    limit: int = Query(10, ge=1, le=100),
    engine: SyncEngine = Depends(get_engine),
):
    return {"project_id": project_id, "history": engine.get_history(project_id, limit)}


# ── Jobs ────────────────────────────────────────────────────────

@router.get("/jobs")
def list_jobs(engine: SyncEngine = Depends(get_engine)):
    return {"jobs": engine.scheduler.list_jobs()}


@router.get("/projects/{project_id}/jobs/{mode}")
def get_job(project_id: str, mode: JobMode, engine: SyncEngine = Depends(get_engine)):
    status = engine.get_job_status(project_id, mode)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No {mode.value} job for project {project_id}")
    return status


@router.put("/projects/{project_id}/jobs/{mode}")
def put_job(project_id: str, mode: JobMode, body: JobUpdate, engine: SyncEngine = Depends(get_engine)):
    return engine.add_or_update_job(project_id, mode, body.interval_minutes)


@router.delete("/projects/{project_id}/jobs/{mode}")
def delete_job(project_id: str, mode: JobMode, engine: SyncEngine = Depends(get_engine)):
    if not engine.remove_job(project_id, mode):
        raise HTTPException(status_code=404, detail=f"No {mode.value} job for project {project_id}")
    return {"removed": True, "job_id": f"{mode.value}-{project_id}"}


# ── Data ────────────────────────────────────────────────────────

@router.get("/projects/{project_id}/metrics")
def get_project_metrics(
    project_id: str,
    start_date: Optional[date] = Query(None, description="Inclusive, YYYY-MM-DD"),
    end_date: Optional[date] = Query(None, description="Inclusive, YYYY-MM-DD"),
    engine: SyncEngine = Depends(get_engine),
):
    metrics = engine.get_metrics(project_id, start_date, end_date)
    return {"project_id": project_id, "count": len(metrics), "metrics": metrics}


@router.get("/projects/{project_id}/records")
def get_project_records(
    project_id: str,
    record_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    engine: SyncEngine = Depends(get_engine),
):
    records = engine.get_records(project_id, record_type, start_date, end_date)
    return {"project_id": project_id, "count": len(records), "records": records}


@router.get("/projects/{project_id}/sources/{source_id}/preview")
async def preview_source(
    project_id: str,
    source_id: str,
    sheet_name: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Sheet titles plus the detected header row (with column letters) of one sheet"""
    return await engine.preview_sheet(project_id, source_id, sheet_name)
