from __future__ import annotations

import sys

from loguru import logger

from retail_sync.core.config import Settings


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.LOG_LEVEL, enqueue=False)

    if settings.LOG_FILE:
        logger.add(
            settings.LOG_FILE,
            rotation="50 MB",
            retention="10 days",
            level=settings.LOG_LEVEL,
        )
