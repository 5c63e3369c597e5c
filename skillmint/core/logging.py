from __future__ import annotations

import logging

from skillmint.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated app creation in tests is a no-op.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep driver chatter out of request logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
