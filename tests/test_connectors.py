"""
Google connector tests: range building, adapter error wrapping and
retries, and access-token refresh. No network calls are made.
"""
import asyncio
import threading
import time
from datetime import datetime, timedelta

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from sheetsync.connectors import google_oauth
from sheetsync.connectors.google_oauth import GoogleCredentialProvider
from sheetsync.connectors.google_sheets import GoogleSheetsAdapter, build_range
from sheetsync.exceptions import AuthError, FetchError
from sheetsync.models.google_connection import GoogleConnection
from sheetsync.utils.retry import calculate_backoff, is_retryable_error


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _http_error(status):
    return HttpError(resp=httplib2.Response({"status": status}), content=b"{}")


# ---------------------------------------------------------------------------
# Sheets adapter
# ---------------------------------------------------------------------------

def test_build_range_quotes_sheet_names():
    assert build_range("Daily") == "'Daily'!A1:Z1000"
    assert build_range("Q1 Spend", "A1:C10") == "'Q1 Spend'!A1:C10"
    assert build_range("Bob's Leads") == "'Bob''s Leads'!A1:Z1000"


def test_fetch_rows_returns_values():
    adapter = GoogleSheetsAdapter("token")
    adapter._execute_with_timeout = lambda request: {"values": [["Date"], ["2024-01-01"]]}

    assert _run(adapter.fetch_rows("sheet-1", build_range("Daily"))) == [["Date"], ["2024-01-01"]]


def test_fetch_rows_missing_values_is_empty_grid():
    adapter = GoogleSheetsAdapter("token")
    adapter._execute_with_timeout = lambda request: {"range": "'Daily'!A1:Z1000"}

    assert _run(adapter.fetch_rows("sheet-1", build_range("Daily"))) == []


def test_client_errors_are_not_retried():
    adapter = GoogleSheetsAdapter("token")
    calls = []

    def execute(request):
        calls.append(request)
        raise _http_error(404)

    adapter._execute_with_timeout = execute

    with pytest.raises(FetchError) as exc_info:
        _run(adapter.fetch_rows("sheet-1", build_range("Missing")))

    assert len(calls) == 1
    assert exc_info.value.details["status"] == 404


def test_transient_errors_are_retried():
    adapter = GoogleSheetsAdapter("token")
    outcomes = [_http_error(503), TimeoutError("timed out"), {"values": [["ok"]]}]

    def execute(request):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    adapter._execute_with_timeout = execute

    assert _run(adapter.fetch_rows("sheet-1", build_range("Daily"))) == [["ok"]]
    assert outcomes == []


def test_exhausted_retries_surface_as_fetch_error():
    adapter = GoogleSheetsAdapter("token")

    def execute(request):
        raise TimeoutError("Google Sheets API call timed out after 30s")

    adapter._execute_with_timeout = execute

    with pytest.raises(FetchError):
        _run(adapter.fetch_rows("sheet-1", build_range("Daily")))


def test_list_sheet_titles():
    adapter = GoogleSheetsAdapter("token")
    adapter._execute_with_timeout = lambda request: {
        "sheets": [{"properties": {"title": "Daily"}}, {"properties": {"title": "Archive"}}]
    }

    assert _run(adapter.list_sheet_titles("sheet-1")) == ["Daily", "Archive"]


def test_retryable_classification():
    assert is_retryable_error(TimeoutError())
    assert is_retryable_error(ConnectionError())
    assert is_retryable_error(_http_error(429))
    assert is_retryable_error(_http_error(500))
    assert not is_retryable_error(_http_error(403))
    assert not is_retryable_error(ValueError("bad range"))
    assert calculate_backoff(3, base_delay=1.0, jitter=False) == 4.0
    assert calculate_backoff(10, base_delay=1.0, max_delay=60.0, jitter=False) == 60.0


# ---------------------------------------------------------------------------
# Credential provider
# ---------------------------------------------------------------------------

def _connect(session_factory, expires_in_minutes, refresh_token="refresh-1"):
    db = session_factory()
    try:
        db.add(GoogleConnection(
            project_id="proj",
            access_token="access-1",
            refresh_token=refresh_token,
            expires_at=datetime.utcnow() + timedelta(minutes=expires_in_minutes),
        ))
        db.commit()
    finally:
        db.close()


def _stored_connection(session_factory):
    db = session_factory()
    try:
        return db.query(GoogleConnection).filter_by(project_id="proj").one()
    finally:
        db.close()


@pytest.fixture
def oauth_client(monkeypatch):
    monkeypatch.setattr(google_oauth.settings, "google_oauth_client_id", "client-id")
    monkeypatch.setattr(google_oauth.settings, "google_oauth_client_secret", "client-secret")


def test_valid_token_is_returned_without_refresh(session_factory, monkeypatch):
    _connect(session_factory, expires_in_minutes=30)

    def fail_refresh(self, request):
        raise AssertionError("refresh should not be called")

    monkeypatch.setattr(Credentials, "refresh", fail_refresh)

    token = _run(GoogleCredentialProvider(session_factory).get_valid_access_token("proj"))

    assert token == "access-1"


def test_token_expiring_soon_is_refreshed_and_stored(session_factory, monkeypatch, oauth_client):
    _connect(session_factory, expires_in_minutes=2)
    new_expiry = datetime.utcnow() + timedelta(hours=1)

    def refresh(self, request):
        self.token = "access-2"
        self.expiry = new_expiry

    monkeypatch.setattr(Credentials, "refresh", refresh)

    token = _run(GoogleCredentialProvider(session_factory).get_valid_access_token("proj"))

    assert token == "access-2"
    stored = _stored_connection(session_factory)
    assert stored.access_token == "access-2"
    assert stored.expires_at == new_expiry


def test_failed_refresh_raises_auth_error(session_factory, monkeypatch, oauth_client):
    _connect(session_factory, expires_in_minutes=-10)

    def refresh(self, request):
        raise RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(Credentials, "refresh", refresh)

    with pytest.raises(AuthError):
        _run(GoogleCredentialProvider(session_factory).get_valid_access_token("proj"))


def test_expired_token_without_refresh_token_raises_auth_error(session_factory, oauth_client):
    _connect(session_factory, expires_in_minutes=-10, refresh_token=None)

    with pytest.raises(AuthError):
        _run(GoogleCredentialProvider(session_factory).get_valid_access_token("proj"))


def test_missing_connection_raises_auth_error(session_factory):
    with pytest.raises(AuthError):
        _run(GoogleCredentialProvider(session_factory).get_valid_access_token("proj"))


def test_hung_request_is_abandoned_at_the_timeout():
    release = threading.Event()

    class HungRequest:
        def execute(self):
            release.wait(10)
            return {}

    adapter = GoogleSheetsAdapter("token", timeout=0.2)
    started = time.monotonic()
    try:
        with pytest.raises(TimeoutError):
            adapter._execute_with_timeout(HungRequest())
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 2
