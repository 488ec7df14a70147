"""Process-wide logging setup for Celery workers and host applications."""

from __future__ import annotations

import logging

from coursedocs.core.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    level = logging.DEBUG if settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )
    logging.basicConfig(level=level, format=LOG_FORMAT)

    # botocore logs every request at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
