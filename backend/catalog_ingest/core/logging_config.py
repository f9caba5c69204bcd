"""Process-wide logging setup shared by the API and the Celery workers."""

import logging

from catalog_ingest.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level once per process."""
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    root.setLevel(resolved)
    # SQL echo is too chatty for worker logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
