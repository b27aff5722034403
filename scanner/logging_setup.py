import logging
import sys
from pathlib import Path

from scanner.config import LOG_FILE, LOG_LEVEL

_CONFIGURED = False


def setup_logging() -> logging.Logger:
    """Configure application logging once per process."""
    global _CONFIGURED

    logger = logging.getLogger("scanbook")
    if _CONFIGURED:
        return logger

    log_level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if LOG_FILE:
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(LOG_FILE))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # Noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    _CONFIGURED = True
    return logger
