"""Root logger setup for the event bus process.

Every line carries the event id and type when the log call passed them in `extra`
(dispatcher and consumer failures do); other lines show "-".
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(event_type)s/%(event_id)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Broker client libraries are chatty at INFO.
_CLIENT_LOGGERS = ("aiokafka", "kafka", "redis")


class EventContextFilter(logging.Filter):
    """Fill event_id/event_type on records logged without them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in ("event_id", "event_type"):
            if not hasattr(record, attr):
                setattr(record, attr, "-")
        return True


def _build_handlers(project_root: Path, cfg: dict[str, Any]) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    log_file = cfg.get("file")
    if log_file:
        path = project_root / log_file
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                path,
                maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
                backupCount=int(cfg.get("backup_count", 3)),
                encoding="utf-8",
            )
        )
    # Console is the fallback when no file is configured.
    if cfg.get("log_to_console", True) or not handlers:
        handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Replace root handlers according to the `logging` settings section."""
    cfg = settings.get("logging", {})
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    context = EventContextFilter()

    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
    for h in _build_handlers(project_root, cfg):
        h.setLevel(level)
        h.setFormatter(formatter)
        h.addFilter(context)
        root.addHandler(h)
    root.setLevel(level)

    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
