"""
Google Sheets Source Adapter

Reads raw cell grids from a spreadsheet with a project's OAuth access
token. The google-api-python-client is blocking, so every request runs in
a worker thread with a hard timeout and transient failures are retried.
"""
import asyncio
import concurrent.futures
from typing import Any, List

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from sheetsync.config import get_settings
from sheetsync.connectors.base import SourceAdapter
from sheetsync.exceptions import FetchError
from sheetsync.utils.logger import log
from sheetsync.utils.retry import retry_async

settings = get_settings()

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]


def build_range(sheet_name: str, cell_range: str = None) -> str:
    """'Sheet 1', 'A1:Z1000' -> "'Sheet 1'!A1:Z1000" (quotes in the name are doubled)"""
    cell_range = cell_range or settings.sheet_fetch_range
    quoted = sheet_name.replace("'", "''")
    return f"'{quoted}'!{cell_range}"


class GoogleSheetsAdapter(SourceAdapter):
    """
    Sheets API v4 adapter bound to one access token

    Values are requested as formatted strings, the way they appear in
    the sheet; the mapping engine does all type coercion.
    """

    source_type = "google_sheets"

    def __init__(self, access_token: str, timeout: int = None):
        self.timeout = timeout or settings.sheets_api_timeout
        credentials = Credentials(token=access_token, scopes=SHEETS_SCOPES)
        http = httplib2.Http(timeout=self.timeout)
        authed_http = google_auth_httplib2.AuthorizedHttp(credentials, http=http)
        self.service = build("sheets", "v4", http=authed_http, cache_discovery=False)

    def _execute_with_timeout(self, request):
        """
        Execute a Google API request with a timeout.

        httplib2 has no overall deadline, so the call runs in its own
        thread and is abandoned after `self.timeout` seconds. The pool is
        not joined, so a hung request cannot hold the caller past the timeout.
        """
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(request.execute)
            try:
                return future.result(timeout=self.timeout)
            except concurrent.futures.TimeoutError:
                raise TimeoutError(f"Google Sheets API call timed out after {self.timeout}s")
        finally:
            pool.shutdown(wait=False)

    async def _execute(self, request):
        retrying = retry_async(
            max_attempts=settings.fetch_max_attempts,
            base_delay=settings.fetch_retry_base_delay,
        )(self._execute_async)
        return await retrying(request)

    async def _execute_async(self, request):
        return await asyncio.to_thread(self._execute_with_timeout, request)

    async def fetch_rows(self, source_id: str, range_spec: str) -> List[List[Any]]:
        request = self.service.spreadsheets().values().get(
            spreadsheetId=source_id,
            range=range_spec,
            valueRenderOption="FORMATTED_VALUE",
        )
        try:
            result = await self._execute(request)
        except HttpError as e:
            raise FetchError(
                f"Google Sheets API error reading {range_spec}: HTTP {e.resp.status}",
                details={"source_id": source_id, "range": range_spec, "status": e.resp.status},
            ) from e
        except Exception as e:
            raise FetchError(
                f"Failed to read {range_spec}: {e}",
                details={"source_id": source_id, "range": range_spec},
            ) from e

        rows = result.get("values", [])
        log.info(f"Fetched {len(rows)} rows from {source_id} {range_spec}")
        return rows

    async def list_sheet_titles(self, source_id: str) -> List[str]:
        request = self.service.spreadsheets().get(
            spreadsheetId=source_id,
            fields="sheets.properties.title",
        )
        try:
            result = await self._execute(request)
        except Exception as e:
            raise FetchError(
                f"Failed to list sheets of {source_id}: {e}",
                details={"source_id": source_id},
            ) from e

        return [
            sheet.get("properties", {}).get("title", "")
            for sheet in result.get("sheets", [])
        ]
