import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Playwright's driver and its transports log every request/route at INFO.
_NOISY_LOGGERS = ("playwright", "asyncio", "urllib3")


def configure_logging(
    level: str = "INFO",
    file_path: Optional[str] = None,
    *,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> None:
    """
    Root logging for the CLI: stderr always, plus a size-rotated UTF-8 file when `file_path` is set.

    `monitor` runs for days, so the file is rotated rather than left to grow. `max_bytes=0`
    disables rotation.
    """
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(path, maxBytes=max(0, int(max_bytes)), backupCount=backup_count, encoding="utf-8")
        )

    logging.basicConfig(level=numeric_level, format=_FORMAT, handlers=handlers, force=True)

    noisy_level = os.getenv("NOISY_LOG_LEVEL", "WARNING").upper()
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(noisy_level)
