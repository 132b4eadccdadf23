import logging
import sys

from gymdesk.config import settings


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        stream=sys.stdout,
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
