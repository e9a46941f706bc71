"""
Logging setup for a11yscan.

Records go to stderr so JSON reports printed on stdout stay parseable.
Anything not passed explicitly falls back to the A11YSCAN_LOG_* settings.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from a11yscan.config import settings
from a11yscan.constants import QUIET_LOGGERS


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name (defaults to A11YSCAN_LOG_LEVEL)
        log_file: Extra log file (defaults to A11YSCAN_LOG_FILE)
        format_string: Record format (defaults to A11YSCAN_LOG_FORMAT)

    Returns:
        The configured root logger
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    log_file = log_file or settings.LOG_FILE
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format=format_string or settings.LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Library chatter only shows up when the scanner itself runs at DEBUG
    library_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    return logging.getLogger()
