"""
Merge / Upsert Engine

Reconciles a batch of records for one (project, source) against storage:
look up which natural keys already exist in a single query, then upsert
each record on its own, classifying it as inserted or updated.
"""
from dataclasses import dataclass
from typing import Dict, List, Sequence, Union

from sqlalchemy.orm import Session

from sheetsync.exceptions import MergeError
from sheetsync.schemas.records import AggregateRecord, IndividualRecord
from sheetsync.services.record_store import SqlRecordStore
from sheetsync.utils.logger import log

Record = Union[AggregateRecord, IndividualRecord]


@dataclass
class MergeCounts:
    inserted: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "errors": self.errors}


class MergeService:
    """Writes record batches through a record store, one commit per record."""

    def __init__(self, db: Session, store=None):
        self.db = db
        self.store = store or SqlRecordStore(db)

    def merge(self, records: Sequence[Record]) -> MergeCounts:
        counts = MergeCounts()
        batch = self._dedupe(records)
        if not batch:
            return counts

        first = batch[0]
        project_id, source_name, kind = first.project_id, first.source_name, first.kind
        for record in batch:
            if (record.project_id, record.source_name, record.kind) != (project_id, source_name, kind):
                raise MergeError(
                    "A merge batch must hold records of one kind for one (project, source)",
                    details={"project_id": project_id, "source": source_name},
                )

        existing = self.store.find_existing(kind, project_id, source_name, [r.key for r in batch])

        for record in batch:
            try:
                self.store.upsert(record)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                counts.errors += 1
                log.warning(f"Failed to upsert {kind} record {record.key} for {project_id}/{source_name}: {e}")
                continue

            if record.key in existing:
                counts.updated += 1
            else:
                counts.inserted += 1

        log.info(
            f"Merged {len(batch)} {kind} records into {project_id}/{source_name}: "
            f"{counts.inserted} inserted, {counts.updated} updated, {counts.errors} errors"
        )
        return counts

    @staticmethod
    def _dedupe(records: Sequence[Record]) -> List[Record]:
        """Collapse repeated natural keys to the last occurrence, keeping first-seen order."""
        by_key: Dict[tuple, Record] = {}
        for record in records:
            by_key[record.natural_key] = record
        return list(by_key.values())
