import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(service: str, level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure root logging for one service process and return its logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_dir / f"{service}.log", maxBytes=2 * 1024 * 1024, backupCount=5)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    return logging.getLogger(service)
