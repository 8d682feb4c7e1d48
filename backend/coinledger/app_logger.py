import logging

from coinledger.settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = settings.log_level.upper()


def setup_logging():
    # Configure root once
    logging.basicConfig(level=getattr(logging, _DEFAULT_LEVEL, logging.INFO), format=LOG_FORMAT)

    logger = logging.getLogger("coinledger")
    logger.setLevel(getattr(logging, _DEFAULT_LEVEL, logging.INFO))

    # Avoid duplicate console handlers
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch.setLevel(logger.level)
        logger.addHandler(ch)

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("coinledger")
    if not name:
        return base
    # "coinledger.workflow" -> child "workflow"
    if name.startswith("coinledger."):
        name = name[len("coinledger."):]
    return base.getChild(name)


logger = setup_logging()
