import logging
from logging.handlers import RotatingFileHandler
import os

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
os.makedirs(LOG_DIR, exist_ok=True)

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name, filename):
    logger = logging.getLogger(name)
    logger.setLevel(LOG_LEVEL)

    # Avoid duplicated handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(FORMAT)

    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=5_000_000,
        backupCount=3
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)

    return logger


anomaly_logger = get_logger("anomaly", "anomaly.log")


def log_anomaly(kind: str, subject, **context) -> None:
    """
    One line per data anomaly (unknown device, ambiguous trip, broken
    reference data, rejected fix...), kept apart from the component logs so
    they can be audited on their own.
    """
    details = " ".join(f"{k}={v}" for k, v in context.items())
    anomaly_logger.warning(f"[{kind}] {subject} {details}".rstrip())
