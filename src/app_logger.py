import logging

from settings import get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
BASE_LOGGER = "schedule_engine"


def setup_logging() -> logging.Logger:
    level = getattr(logging, get_settings().log_level, logging.INFO)

    logger = logging.getLogger(BASE_LOGGER)
    logger.setLevel(level)

    # Avoid duplicate console handlers on re-import
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch.setLevel(level)
        logger.addHandler(ch)

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger(BASE_LOGGER)
    return base.getChild(name) if name else base


logger = setup_logging()
