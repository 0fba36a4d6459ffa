"""Logging setup shared by the CLI and library users."""

import logging

from tabwright.config import CONFIG

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str | int | None = None, log_file: str | None = None) -> logging.Logger:
    """Configure root logging for tabwright.

    Args:
        level: Level name or number. Defaults to ``TABWRIGHT_LOGGING_LEVEL``.
        log_file: Optional path for an additional file handler. Defaults to
            ``TABWRIGHT_LOG_FILE``.

    Returns:
        The ``tabwright`` package logger.
    """
    if level is None:
        level = CONFIG.LOGGING_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT)

    package_logger = logging.getLogger('tabwright')
    package_logger.setLevel(level)

    log_file = log_file or CONFIG.LOG_FILE
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(file_handler)

    # bubus logs every dispatch at debug level
    bus_level = logging.getLevelName(CONFIG.EVENT_BUS_LOGGING_LEVEL)
    logging.getLogger('bubus').setLevel(bus_level if isinstance(bus_level, int) else logging.WARNING)

    return package_logger
