"""Logging setup for the CLI and long-running processes.

Human output goes through :class:`rich.logging.RichHandler`; ``json_output``
switches to one JSON object per line for log collectors. The level comes
from the argument, then ``FOLIO_MEDIA_LOG_LEVEL``, then ``WARNING``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

LEVEL_ENV_VAR = "FOLIO_MEDIA_LOG_LEVEL"
DEFAULT_LEVEL = "WARNING"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def resolve_level(level: str | None = None) -> int:
    name = (level or os.environ.get(LEVEL_ENV_VAR) or DEFAULT_LEVEL).upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {name}")
    return resolved


def setup_logging(level: str | None = None, json_output: bool = False) -> None:
    """Replace the root handlers with a single rich or JSON handler on stderr."""
    numeric_level = resolve_level(level)
    handler: logging.Handler
    if json_output:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    handler.setLevel(numeric_level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    logging.getLogger("PIL").setLevel(max(numeric_level, logging.INFO))
    logging.getLogger(__name__).debug(
        "Logging configured: level=%s, json=%s", logging.getLevelName(numeric_level), json_output
    )
