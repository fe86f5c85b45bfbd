from __future__ import annotations

import logging

from refund_recon.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return

    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
    # SQL echo stays off unless explicitly requested through the level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
