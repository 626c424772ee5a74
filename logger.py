import logging
from datetime import datetime, timezone

Logger_Cache = {}
Default_Level = logging.INFO


def set_level(level):
    global Default_Level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    Default_Level = level
    for logger in Logger_Cache.values():
        logger.setLevel(level)


class UTCFormatter(logging.Formatter):
    def format(self, record):
        record.utc_time = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        if record.levelno >= logging.ERROR:
            self._style._fmt = "%(utc_time)s %(name)-20s =====> ERROR %(message)s"
        else:
            self._style._fmt = "%(utc_time)s %(name)-20s:%(levelname)-8s %(message)s"
        return super().format(record)


def get_logger(name: str, level=None) -> logging.Logger:
    """Return a logger with a single console handler, cached by name."""
    if name in Logger_Cache:
        return Logger_Cache[name]

    if level is None:
        level = Default_Level
    logger = logging.getLogger(name)
    logger.setLevel(level)

    ch = logging.StreamHandler()
    ch.setFormatter(UTCFormatter())
    logger.addHandler(ch)
    logger.propagate = False

    Logger_Cache[name] = logger
    return logger
