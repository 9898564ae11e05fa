"""
Google OAuth credential provider

Hands out a currently valid access token for a project's Google
connection, refreshing it with the stored refresh token when it is
about to expire. The consent flow that creates the connection lives
outside this service.
"""
import asyncio
from datetime import datetime, timedelta

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from sheetsync.config import get_settings
from sheetsync.connectors.google_sheets import SHEETS_SCOPES
from sheetsync.exceptions import AuthError
from sheetsync.models.base import SessionLocal
from sheetsync.models.google_connection import GoogleConnection
from sheetsync.utils.logger import log

settings = get_settings()


class GoogleCredentialProvider:
    """Access tokens per project, refreshed through google-auth"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self.refresh_margin = timedelta(minutes=settings.token_refresh_margin_minutes)

    def _needs_refresh(self, connection: GoogleConnection) -> bool:
        if connection.expires_at is None:
            return False
        return connection.expires_at - self.refresh_margin <= datetime.utcnow()

    async def get_valid_access_token(self, project_id: str) -> str:
        db = self.session_factory()
        try:
            connection = db.query(GoogleConnection).filter(
                GoogleConnection.project_id == project_id
            ).first()
            if connection is None:
                raise AuthError(
                    f"No Google connection for project {project_id}",
                    details={"project_id": project_id},
                )

            if not self._needs_refresh(connection):
                return connection.access_token

            if not connection.refresh_token:
                raise AuthError(
                    "Google access token expired and no refresh token is stored; reconnect Google",
                    details={"project_id": project_id},
                )
            if not settings.google_oauth_client_id or not settings.google_oauth_client_secret:
                raise AuthError(
                    "GOOGLE_OAUTH_CLIENT_ID / GOOGLE_OAUTH_CLIENT_SECRET are not configured",
                    details={"project_id": project_id},
                )

            log.info(f"Refreshing Google access token for project {project_id}")
            credentials = Credentials(
                token=None,
                refresh_token=connection.refresh_token,
                token_uri=settings.google_token_uri,
                client_id=settings.google_oauth_client_id,
                client_secret=settings.google_oauth_client_secret,
                scopes=SHEETS_SCOPES,
            )
            try:
                await asyncio.to_thread(credentials.refresh, Request())
            except GoogleAuthError as e:
                raise AuthError(
                    f"Failed to refresh Google access token: {e}",
                    details={"project_id": project_id},
                ) from e

            connection.access_token = credentials.token
            # google-auth reports expiry as naive UTC
            connection.expires_at = credentials.expiry
            db.commit()
            return connection.access_token
        finally:
            db.close()
