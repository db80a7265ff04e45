import logging
import sys
from datetime import datetime, timezone

from app import config

ROOT_LOGGER = "app"


class CrawlFormatter(logging.Formatter):
    """
    Single-line format shared by console and file output:
    [ Tue Jan 06 05:32:41 AM UTC 2026 ] : INFO : <job-id or root> : Message
    """

    def format(self, record):
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, "context", "root")
        line = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logger(name=ROOT_LOGGER, log_file=None, level=None):
    """Configure the package logger once; later calls return it unchanged."""
    logger = logging.getLogger(name)
    logger.setLevel(level or config.LOG_LEVEL)

    # Avoid duplicate handlers if called more than once (reload, tests)
    if logger.handlers:
        return logger

    # Module loggers (app.crawler, app.fetcher, ...) propagate to the package logger
    if name != ROOT_LOGGER:
        logger.propagate = True
        setup_logger(ROOT_LOGGER, log_file=log_file, level=level)
        return logger

    formatter = CrawlFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_file = log_file or config.LOG_FILE
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
