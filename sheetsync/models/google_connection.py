"""
Google OAuth connection per project (written by the consent flow, refreshed here)
"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from datetime import datetime

from sheetsync.models.base import Base


class GoogleConnection(Base):
    __tablename__ = "google_connections"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, unique=True, index=True, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # UTC, naive
    user_email = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<GoogleConnection {self.project_id} {self.user_email or ''}>"
