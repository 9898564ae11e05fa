"""
Record Store

Keyed relational storage for synced records. Writes are single
INSERT ... ON CONFLICT DO UPDATE statements on the natural key, so a
replayed record overwrites the stored row instead of duplicating it.
"""
from datetime import datetime
from typing import Any, Iterable, Set, Union

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from sheetsync.models.project_metrics import ProjectDailyMetric, ProjectIndividualRecord
from sheetsync.schemas.records import AGGREGATE, INDIVIDUAL, AggregateRecord, IndividualRecord

Record = Union[AggregateRecord, IndividualRecord]

# kind -> (model, key column, natural-key columns)
_TABLES = {
    AGGREGATE: (ProjectDailyMetric, "date", ("project_id", "date", "source")),
    INDIVIDUAL: (ProjectIndividualRecord, "record_id", ("project_id", "source", "record_id")),
}

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SqlRecordStore:
    """Natural-key upserts against the metrics tables (PostgreSQL or SQLite)."""

    def __init__(self, db: Session):
        self.db = db
        dialect = db.get_bind().dialect.name
        if dialect not in _INSERTS:
            raise ValueError(f"Upserts are not supported on the {dialect} dialect")
        self._insert = _INSERTS[dialect]

    def find_existing(self, kind: str, project_id: str, source_name: str, keys: Iterable[Any]) -> Set[Any]:
        """Subset of `keys` already stored for this (project, source)."""
        model, key_column, _ = _TABLES[kind]
        keys = list(set(keys))
        if not keys:
            return set()

        column = getattr(model, key_column)
        rows = self.db.query(column).filter(
            model.project_id == project_id,
            model.source == source_name,
            column.in_(keys),
        ).all()
        return {row[0] for row in rows}

    def upsert(self, record: Record) -> None:
        """Insert or overwrite one record by its natural key. Caller commits."""
        model, _, conflict_columns = _TABLES[record.kind]
        values = record.to_row()
        now = datetime.utcnow()
        values["updated_at"] = now

        stmt = self._insert(model).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={
                name: stmt.excluded[name]
                for name in values
                if name not in conflict_columns
            },
        )
        self.db.execute(stmt)
