from __future__ import annotations

import logging

from statewatch.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated calls only re-apply the level.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep SQL echo out of application logs unless explicitly requested.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
