import logging

from app.core.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configures root logging once for the API process and the standalone workers."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # aiormq is chatty at INFO on every reconnect attempt
    logging.getLogger("aiormq").setLevel(logging.WARNING)
