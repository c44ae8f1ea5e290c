"""Logging helpers for the redistribution CLI."""

from __future__ import annotations

import logging
from pathlib import Path


class PayoutNarrativeFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if record.levelno >= logging.WARNING:
            return True
        if getattr(record, "narrative", False):
            return True
        if record.name.startswith("deadline_dao.redistribution"):
            return True
        return False


def configure_logging(level: int = logging.INFO, log_paths: list[str] | None = None) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    narrative_path = log_paths[0] if log_paths else None
    if narrative_path:
        path = Path(narrative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        narrative_handler = logging.FileHandler(path, encoding="utf-8")
        narrative_handler.addFilter(PayoutNarrativeFilter())
        handlers.append(narrative_handler)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
