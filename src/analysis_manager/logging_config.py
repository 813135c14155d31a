from __future__ import annotations

import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    verbose: bool = False,
    logger_name: Optional[str] = None,
    rich_output: bool = False,
) -> logging.Logger:
    """
    Configure process-wide logging and return a scoped logger.

    Plain pipe-delimited records go to stdout so that the manager's log files stay
    grep-friendly; ``rich_output`` switches to a Rich handler for interactive use.
    """
    level = logging.DEBUG if verbose else logging.INFO
    if rich_output:
        handler: logging.Handler = RichHandler(console=Console(), show_time=True, show_path=False)
        log_format = "%(message)s"
    else:
        handler = logging.StreamHandler(sys.stdout)
        log_format = LOG_FORMAT
    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=DATE_FORMAT,
        handlers=[handler],
        force=True,
    )
    logger = logging.getLogger(logger_name or "analysis_manager")
    logger.debug("Logging configured with level %s", logging.getLevelName(level))
    return logger
