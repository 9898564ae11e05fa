"""
Sync configuration and history models
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from datetime import datetime

from sheetsync.models.base import Base


class ProjectSyncConfigRecord(Base):
    """
    Persisted sync configuration for a project

    `config` holds the JSON document whose shape is given by `schema_version`:
    1 = legacy single-spreadsheet config, 2 = multi-source config.
    """
    __tablename__ = "project_sync_configs"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, unique=True, index=True, nullable=False)

    schema_version = Column(Integer, nullable=False, default=2)
    config = Column(JSON, nullable=False)

    # Scheduling
    auto_sync_enabled = Column(Boolean, default=False, index=True)
    interval_minutes = Column(Integer, default=60)

    # Last run status
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String(20), nullable=True)  # success | error | syncing
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ProjectSyncConfigRecord {self.project_id} v{self.schema_version}>"


class SyncHistory(Base):
    """One row per orchestrator run (manual or scheduled)"""
    __tablename__ = "sync_history"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, index=True, nullable=False)
    sync_type = Column(String(20), nullable=False)   # manual | scheduled
    status = Column(String(20), nullable=False, index=True)  # running | success | error

    sheets_synced = Column(Integer, default=0)
    rows_processed = Column(Integer, default=0)
    rows_inserted = Column(Integer, default=0)
    rows_updated = Column(Integer, default=0)
    rows_errored = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)  # Per-unit results

    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncHistory {self.project_id} {self.sync_type} [{self.status}]>"
