import logging
import os
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

ROOT_LOGGER = "koppel"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str) -> logging.Logger:
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def configure_logging(level: Optional[str] = None, json_format: bool = False) -> logging.Logger:
    """Attach a single stream handler to the ``koppel`` logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    level_name = (level or os.environ.get("KOPPEL_LOG_LEVEL") or "warning").upper()
    logger.setLevel(getattr(logging, level_name, logging.WARNING))

    if not logger.handlers:
        formatter = JsonFormatter(LOG_FORMAT) if json_format else logging.Formatter(LOG_FORMAT)
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger
