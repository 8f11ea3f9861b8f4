from __future__ import annotations

import logging
import os


class HealthCheckFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return "/healthz" not in record.getMessage()


def log_level(default: str = "INFO") -> int:
    raw = (os.getenv("TOILETMAP_LOG_LEVEL") or default).strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=log_level(level or "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())
