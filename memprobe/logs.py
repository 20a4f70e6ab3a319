import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(filename)s:%(lineno)d: %(message)s"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def setup_logging(
    log_file: str, level: int = logging.INFO, logger_name: str = "memprobe"
) -> logging.Handler:
    """Route the package logger to ``log_file`` in append mode.

    Raises OSError if the file cannot be opened.
    """
    handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    logger = logging.getLogger(logger_name)
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler


def close_logging(
    handler: Optional[logging.Handler], logger_name: str = "memprobe"
) -> None:
    if handler is None:
        return
    logging.getLogger(logger_name).removeHandler(handler)
    handler.close()
