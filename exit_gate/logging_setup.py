"""
Logging setup for the exit gate CLI.

Hook stdout carries directives for the agent, so log records go to stderr
or to the configured file, never to stdout.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(config: Optional[LoggingConfig] = None, verbose: bool = False) -> None:
    """
    Configure root logging from a LoggingConfig.

    Args:
        config: Logging section of the gate config
        verbose: Force DEBUG level
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.WARNING)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_path)
    else:
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[handler],
        force=True,
    )
