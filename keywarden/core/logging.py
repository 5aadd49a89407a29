from __future__ import annotations

import logging

from keywarden.core.config import Settings, get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    # Scripts and workers share one format so key=value messages stay greppable.
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # botocore is chatty at INFO and would drown rotation logs.
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
