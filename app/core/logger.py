import logging
import sys
from app.core.config import settings

def setup_logging():
    """
    Configure the root "teleconsult" logger. Module loggers are children of it
    (teleconsult.messages, teleconsult.presence, ...) and inherit the handler.
    """
    logger = logging.getLogger("teleconsult")
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    return logger

def get_logger(area: str) -> logging.Logger:
    return logging.getLogger(f"teleconsult.{area}")

logger = setup_logging()
