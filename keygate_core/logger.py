import logging, json, sys, time, os

LOG_LEVEL_ENV = "KEYGATE_LOG_LEVEL"


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, UTC timestamps."""
    converter = time.gmtime

    def format(self, record):
        line = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False)


def get_logger(name="keygate", level=None, to_file=None):
    """Structured logger shared by all KeyGate components."""
    logger = logging.getLogger(name)
    logger.setLevel(level or os.getenv(LOG_LEVEL_ENV, "INFO").upper())

    if not logger.handlers:
        formatter = JsonLineFormatter()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def set_level(level, prefix="KG"):
    """Apply one level to every component logger created so far."""
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith(prefix) and isinstance(logger, logging.Logger):
            logger.setLevel(level.upper() if isinstance(level, str) else level)
