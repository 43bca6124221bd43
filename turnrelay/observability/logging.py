"""Structured logging bridge."""

from __future__ import annotations

import logging

from turnrelay.util.logger import logger


def log_event(event: str, *, level: int = logging.INFO, **payload: object) -> None:
    logger.log(level, "event=%s payload=%s", event, payload)
