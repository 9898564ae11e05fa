"""
Project metric models

Daily aggregate metrics and individual business records synced from
spreadsheets. Both tables are keyed by a natural key that upserts
conflict on, so replaying a sync overwrites rather than duplicates.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Date, UniqueConstraint
from datetime import datetime

from sheetsync.models.base import Base


class ProjectDailyMetric(Base):
    """One row per (project, date, source) - aggregate sync mode"""
    __tablename__ = "project_daily_metrics"
    __table_args__ = (
        UniqueConstraint("project_id", "date", "source", name="uq_daily_metrics_project_date_source"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Natural key
    project_id = Column(String, index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    # e.g. google_sheets:<spreadsheet id>

    # Predefined metric slots
    outbound_clicks = Column(Float, nullable=True)
    amount_spent = Column(Float, nullable=True)
    outbound_ctr = Column(Float, nullable=True)
    cpm = Column(Float, nullable=True)
    cpc = Column(Float, nullable=True)
    impressions = Column(Float, nullable=True)
    reach = Column(Float, nullable=True)
    frequency = Column(Float, nullable=True)
    conversions = Column(Float, nullable=True)
    conversion_rate = Column(Float, nullable=True)
    cost_per_conversion = Column(Float, nullable=True)
    revenue = Column(Float, nullable=True)
    roas = Column(Float, nullable=True)

    # Custom metrics keyed by display name
    custom_data = Column(JSON, nullable=True)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProjectDailyMetric {self.project_id} {self.date} [{self.source}]>"


class ProjectIndividualRecord(Base):
    """One row per (project, source, record id) - individual sync mode"""
    __tablename__ = "project_individual_records"
    __table_args__ = (
        UniqueConstraint("project_id", "source", "record_id", name="uq_individual_records_project_source_record"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Natural key
    project_id = Column(String, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    record_id = Column(String, index=True, nullable=False)
    # close_id, lead_id, ...

    date = Column(Date, index=True, nullable=False)
    record_type = Column(String, index=True, nullable=False)
    # sale, lead, call, ...
    amount = Column(Float, nullable=True)
    status = Column(String, nullable=True)
    # closed, pending, cancelled, ...

    # Every other mapped column
    record_data = Column(JSON, nullable=True)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProjectIndividualRecord {self.record_type} {self.record_id} [{self.source}]>"
