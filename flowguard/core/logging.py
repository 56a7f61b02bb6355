from __future__ import annotations

import logging

from flowguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once per process; repeated calls only adjust the level.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep driver chatter out of control-loop logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
