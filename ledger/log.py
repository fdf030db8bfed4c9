import sys

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{function} | {message}"


def configure_logging(level: str = "INFO") -> None:
    """Route all loguru output to a single stderr sink at ``level``."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        backtrace=True,
        diagnose=False,
        enqueue=False,
    )
    logger.debug("Logger configured at level {}", level)
