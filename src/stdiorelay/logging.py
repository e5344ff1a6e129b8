import logging


_LOGGERS: dict[str, logging.Logger] = {}


def get_logger(name: str) -> logging.Logger:
    if name in _LOGGERS:
        return _LOGGERS[name]

    logger = logging.getLogger(name)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.WARN)
    _LOGGERS[name] = logger
    return logger


def set_level(level: str | int):
    """Sets the level of every logger created through ``get_logger``."""
    for logger in _LOGGERS.values():
        logger.setLevel(level)
