"""Loguru sink setup."""

import sys

from loguru import logger

from .config import LoggingSettings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(settings: LoggingSettings) -> None:
    """
    Replace loguru's default sink with the configured ones.

    Args:
        settings: Logging section of the config
    """
    logger.remove()
    logger.add(sys.stderr, level=settings.level.upper(), format=LOG_FORMAT)

    if settings.file:
        settings.file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(settings.file),
            level=settings.level.upper(),
            rotation=settings.rotation,
            retention=settings.retention,
            enqueue=True,
        )
        logger.info(f"Logging to {settings.file}")
