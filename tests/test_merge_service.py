"""
Merge service tests against in-memory SQLite: insert/update
classification, idempotent replays and per-record failure isolation.
"""
from datetime import date

from sheetsync.models.project_metrics import ProjectDailyMetric, ProjectIndividualRecord
from sheetsync.schemas.records import AggregateRecord, IndividualRecord
from sheetsync.services.merge_service import MergeService
from sheetsync.services.record_store import SqlRecordStore

SOURCE = "google_sheets:sheet-1"


def _daily(day, spend, **custom):
    return AggregateRecord(
        project_id="proj",
        date=date(2024, 1, day),
        source_name=SOURCE,
        metrics={"amount_spent": spend},
        custom_data=custom,
    )


def _stored_daily(db):
    rows = db.query(ProjectDailyMetric).order_by(ProjectDailyMetric.date).all()
    return [(r.project_id, r.date, r.source, r.amount_spent, r.custom_data) for r in rows]


def test_first_merge_inserts_everything(db):
    counts = MergeService(db).merge([_daily(1, 100.0), _daily(2, 200.0)])

    assert counts.to_dict() == {"inserted": 2, "updated": 0, "errors": 0}
    assert _stored_daily(db) == [
        ("proj", date(2024, 1, 1), SOURCE, 100.0, {}),
        ("proj", date(2024, 1, 2), SOURCE, 200.0, {}),
    ]


def test_replaying_a_batch_is_idempotent(db):
    batch = [_daily(1, 100.0, Calls=3.0), _daily(2, 200.0)]
    MergeService(db).merge(batch)
    before = _stored_daily(db)

    counts = MergeService(db).merge(batch)

    assert counts.to_dict() == {"inserted": 0, "updated": 2, "errors": 0}
    assert _stored_daily(db) == before
    assert db.query(ProjectDailyMetric).count() == 2


def test_later_sync_overwrites_instead_of_accumulating(db):
    MergeService(db).merge([_daily(1, 100.0, Calls=3.0)])

    counts = MergeService(db).merge([_daily(1, 150.0), _daily(3, 30.0)])

    assert (counts.inserted, counts.updated) == (1, 1)
    db.expire_all()
    assert _stored_daily(db) == [
        ("proj", date(2024, 1, 1), SOURCE, 150.0, {}),
        ("proj", date(2024, 1, 3), SOURCE, 30.0, {}),
    ]


def test_same_date_from_another_source_is_a_separate_record(db):
    MergeService(db).merge([_daily(1, 100.0)])
    other = _daily(1, 5.0)
    other.source_name = "google_sheets:sheet-2"

    counts = MergeService(db).merge([other])

    assert counts.inserted == 1
    assert db.query(ProjectDailyMetric).count() == 2


def test_duplicate_keys_in_one_batch_collapse_to_last_row(db):
    counts = MergeService(db).merge([_daily(1, 100.0), _daily(1, 111.0)])

    assert counts.to_dict() == {"inserted": 1, "updated": 0, "errors": 0}
    assert _stored_daily(db)[0][3] == 111.0


def test_empty_batch(db):
    assert MergeService(db).merge([]).to_dict() == {"inserted": 0, "updated": 0, "errors": 0}


def test_individual_records_upsert_by_record_id(db):
    def sale(record_id, amount, status):
        return IndividualRecord(
            project_id="proj",
            source_name=SOURCE,
            record_id=record_id,
            date=date(2024, 1, 5),
            record_type="sale",
            amount=amount,
            status=status,
            record_data={"Closer": "Dana"},
        )

    first = MergeService(db).merge([sale("C-1", 100.0, "pending"), sale("C-2", 50.0, "closed")])
    second = MergeService(db).merge([sale("C-1", 120.0, "closed")])

    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (0, 1)
    db.expire_all()
    stored = db.query(ProjectIndividualRecord).filter_by(record_id="C-1").one()
    assert (stored.amount, stored.status, stored.record_data) == (120.0, "closed", {"Closer": "Dana"})
    assert db.query(ProjectIndividualRecord).count() == 2


class FlakyStore(SqlRecordStore):
    """Fails the write for one date, delegates everything else."""

    def __init__(self, db, bad_date):
        super().__init__(db)
        self.bad_date = bad_date

    def upsert(self, record):
        if record.date == self.bad_date:
            raise RuntimeError("disk full")
        super().upsert(record)


def test_record_failure_is_counted_and_batch_continues(db):
    store = FlakyStore(db, date(2024, 1, 2))

    counts = MergeService(db, store=store).merge([_daily(1, 1.0), _daily(2, 2.0), _daily(3, 3.0)])

    assert counts.to_dict() == {"inserted": 2, "updated": 0, "errors": 1}
    assert [row[1] for row in _stored_daily(db)] == [date(2024, 1, 1), date(2024, 1, 3)]


def test_find_existing_scopes_by_project_and_source(db):
    MergeService(db).merge([_daily(1, 1.0), _daily(2, 2.0)])
    store = SqlRecordStore(db)

    keys = [date(2024, 1, 1), date(2024, 1, 9)]
    assert store.find_existing("aggregate", "proj", SOURCE, keys) == {date(2024, 1, 1)}
    assert store.find_existing("aggregate", "other", SOURCE, keys) == set()
    assert store.find_existing("aggregate", "proj", "google_sheets:x", keys) == set()
    assert store.find_existing("aggregate", "proj", SOURCE, []) == set()
