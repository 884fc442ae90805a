import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Library loggers that are too chatty at DEBUG
NOISY_LOGGERS = ("uvicorn.access", "websockets", "asyncio")

_configured = False


def _parse_level(value, default: int = logging.INFO) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    level = logging.getLevelName(text)
    if isinstance(level, int):
        return level
    try:
        return int(text)
    except ValueError:
        return default


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger for the service.

    Safe to call more than once; later calls replace the handlers installed by
    earlier ones instead of stacking duplicates.
    """
    global _configured

    level = _parse_level(log_level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def is_configured() -> bool:
    return _configured
