"""
SheetSync
Main FastAPI application
"""
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sheetsync import __version__
from sheetsync.api import health, sync
from sheetsync.config import get_settings
from sheetsync.services.sync_engine import SyncEngine
from sheetsync.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from sheetsync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    engine = app.state.engine_factory()
    app.state.engine = engine

    if settings.enable_scheduler:
        try:
            engine.start()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")
    else:
        log.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    # Shutdown
    engine.shutdown()
    log.info("Shutting down application")


def create_app(engine_factory: Callable[[], SyncEngine] = SyncEngine) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="""
        Spreadsheet sync engine

        Pulls Google Sheets on a schedule and merges them into per-project
        daily metrics or individual records:
        - Column-letter mappings with header detection
        - Aggregate (one row per day) and individual (one row per id) modes
        - Idempotent natural-key upserts
        - Multiple spreadsheets per project with per-sheet failure isolation
        - Auto-sync jobs with exponential backoff
        """,
        lifespan=lifespan
    )
    app.state.engine_factory = engine_factory

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(sync.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sheetsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
