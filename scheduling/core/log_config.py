"""Logging configuration"""
import logging
import sys

from scheduling.core import config

NOISY_LOGGERS = (
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "uvicorn.access",
)


def setup_logging(verbose: bool = True) -> None:
    level = getattr(logging, config.LOG_LEVEL, logging.INFO) if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
