"""Process-wide ``turnrelay`` logger: stderr always, plus a rotating file when one is configured."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from turnrelay.config.settings import Settings, settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(raw: str) -> int:
    level = logging.getLevelName(str(raw or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _rotating_file_handler(config: Settings) -> RotatingFileHandler | None:
    if not config.log_file:
        return None
    target = Path(config.log_file)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            target,
            maxBytes=config.log_file_max_bytes,
            backupCount=config.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError:
        # 只读容器等场景退回仅 stderr
        return None


def configure_logging(config: Settings = settings, name: str = "turnrelay") -> logging.Logger:
    """Attach handlers to the ``name`` logger once; later calls return it unchanged."""
    configured = logging.getLogger(name)
    if configured.handlers:
        return configured

    level = _resolve_level(config.log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    file_handler = _rotating_file_handler(config)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_handler is not None:
        handlers.append(file_handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        configured.addHandler(handler)

    configured.setLevel(level)
    configured.propagate = False
    if config.log_file and file_handler is None:
        configured.warning("log file not writable path=%s; logging to stderr only", config.log_file)
    return configured


logger = configure_logging()
