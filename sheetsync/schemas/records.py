"""
Typed domain records produced by the mapping engine and written by the merge service
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional, Tuple

from sheetsync.schemas.sync_config import PREDEFINED_METRICS

AGGREGATE = "aggregate"
INDIVIDUAL = "individual"


@dataclass
class AggregateRecord:
    """Daily metrics for one (project, date, source)."""
    project_id: str
    date: date
    source_name: str
    metrics: Dict[str, float] = field(default_factory=dict)
    custom_data: Dict[str, Any] = field(default_factory=dict)

    kind = AGGREGATE

    @property
    def key(self) -> date:
        """Key within its (project, source) batch."""
        return self.date

    @property
    def natural_key(self) -> Tuple[str, date, str]:
        return (self.project_id, self.date, self.source_name)

    def to_row(self) -> Dict[str, Any]:
        # Every slot is written so an upsert replaces the stored row entirely
        row = {key: self.metrics.get(key) for key in PREDEFINED_METRICS}
        row.update({
            "project_id": self.project_id,
            "date": self.date,
            "source": self.source_name,
            "custom_data": dict(self.custom_data),
        })
        return row


@dataclass
class IndividualRecord:
    """One business entity (sale, lead, call...) keyed by its unique id."""
    project_id: str
    source_name: str
    record_id: str
    date: date
    record_type: str
    amount: Optional[float] = None
    status: Optional[str] = None
    record_data: Dict[str, Any] = field(default_factory=dict)

    kind = INDIVIDUAL

    @property
    def key(self) -> str:
        return self.record_id

    @property
    def natural_key(self) -> Tuple[str, str, str]:
        return (self.project_id, self.source_name, self.record_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "source": self.source_name,
            "record_id": self.record_id,
            "date": self.date,
            "record_type": self.record_type,
            "amount": self.amount,
            "status": self.status,
            "record_data": dict(self.record_data),
        }
