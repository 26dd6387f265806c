"""Logging utilities."""

import logging
import sys


# Libraries that log every request or packet at INFO
NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "paramiko", "watchfiles")


def setup_logging(level: str = "INFO"):
    """Send hatchery's logs to stderr, keeping stdout free for reports."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
