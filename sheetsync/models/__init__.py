"""Database models for SheetSync"""

from sheetsync.models.project_metrics import (
    ProjectDailyMetric,
    ProjectIndividualRecord
)

from sheetsync.models.sync_config import (
    ProjectSyncConfigRecord,
    SyncHistory
)

from sheetsync.models.google_connection import GoogleConnection
