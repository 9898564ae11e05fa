"""
Shared test setup: quiet logging, in-memory SQLite, fake Google collaborators.
"""
import os

# Must be set before sheetsync.config is first imported
os.environ["LOG_TO_FILE"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["FETCH_RETRY_BASE_DELAY"] = "0"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sheetsync.exceptions import AuthError, FetchError
from sheetsync.models.base import init_db


class FakeCredentialProvider:
    def __init__(self, token="test-token", error=None):
        self.token = token
        self.error = error
        self.calls = []

    async def get_valid_access_token(self, project_id):
        self.calls.append(project_id)
        if self.error:
            raise AuthError(self.error, details={"project_id": project_id})
        return self.token


class FakeSheetsAdapter:
    """
    Serves grids keyed by (spreadsheet id, sheet name).

    A value that is an exception instance is raised instead of returned.
    """

    def __init__(self, grids=None):
        self.grids = grids or {}
        self.requests = []

    async def fetch_rows(self, source_id, range_spec):
        self.requests.append((source_id, range_spec))
        sheet_name = range_spec.split("!", 1)[0].strip("'").replace("''", "'")
        value = self.grids.get((source_id, sheet_name))
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise FetchError(f"Unable to parse range: {range_spec}")
        return value

    async def list_sheet_titles(self, source_id):
        return [sheet for (sid, sheet) in self.grids if sid == source_id]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
