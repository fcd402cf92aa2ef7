from __future__ import annotations

import json
import logging
from typing import Any

from coldcase.core.config import settings

_configured = False


def get_logger(name: str) -> logging.Logger:
    global _configured
    if not _configured:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        _configured = True
    return logging.getLogger(name)


def log_event(logger: logging.Logger, message: str, **fields: Any) -> None:
    payload = {"event": message, **fields}
    logger.info(json.dumps(payload, sort_keys=True, default=str))
