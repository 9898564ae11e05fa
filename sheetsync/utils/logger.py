"""
Logging configuration

Every record carries a `project_id` extra: "-" by default, and the project
being synced inside `log.contextualize(project_id=...)` so interleaved
scheduled runs can be told apart.
"""
from loguru import logger
import os
import sys
from sheetsync.config import get_settings

settings = get_settings()

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[project_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[project_id]} | {name}:{function} - {message}"


def setup_logger():
    """Console sink always; daily sync and error files unless LOG_TO_FILE=false"""
    logger.remove()
    logger.configure(extra={"project_id": "-"})

    logger.add(sys.stdout, colorize=True, format=CONSOLE_FORMAT, level=settings.log_level)

    if not settings.log_to_file:
        return logger

    logger.add(
        os.path.join(settings.log_dir, "sheetsync_{time:YYYY-MM-DD}.log"),
        format=FILE_FORMAT,
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO"
    )

    # Failed runs and units only
    logger.add(
        os.path.join(settings.log_dir, "sync_errors_{time:YYYY-MM-DD}.log"),
        format=FILE_FORMAT,
        rotation="00:00",
        retention="90 days",
        level="ERROR"
    )

    return logger


log = setup_logger()
