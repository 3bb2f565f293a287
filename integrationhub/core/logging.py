from __future__ import annotations

import logging

from integrationhub.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install a single root handler; repeated calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
        # Library loggers emit per-job and per-request lines at INFO.
        logging.getLogger("arq").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        _configured = True
    root.setLevel(resolved)
