import logging
import logging.config
import os

PACKAGE_LOGGER = "cascade_categorizer"
LOG_FILENAME = "categorizer.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Client libraries under the remote layer log every HTTP round trip at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "openai")
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class ColourizedFormatter(logging.Formatter):
    """
    Formatter that colours the level name for terminal output.
    """
    GREY = "\x1b[90m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[33m"
    RED = "\x1b[31m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        orig_levelname = record.levelname
        if record.levelno in self.LEVEL_COLORS:
            record.levelname = f"{self.LEVEL_COLORS[record.levelno]}{record.levelname}{self.RESET}"
        result = super().format(record)
        # Other handlers share the record
        record.levelname = orig_levelname
        return result


def get_logging_config() -> dict:
    """Build the dictConfig for the service.

    ``LOG_LEVEL`` sets the root level and ``CATEGORIZER_LOG_LEVEL`` overrides
    it for the engine's own loggers, so routing decisions can be traced at
    DEBUG without drowning in server noise. With ``LOG_DIR`` set, a plain
    rotating file log is written next to the console output.
    """
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    engine_level_name = os.getenv("CATEGORIZER_LOG_LEVEL", log_level_name).upper()
    log_dir = os.getenv("LOG_DIR")
    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "default",
        },
    }
    root_handlers = ["console"]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": os.path.join(log_dir, LOG_FILENAME),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
            "formatter": "plain",
        }
        root_handlers.append("file")

    loggers: dict[str, dict] = {
        "": {
            "handlers": root_handlers,
            "level": log_level_name,
        },
        PACKAGE_LOGGER: {
            "level": engine_level_name,
        },
    }
    for name in SERVER_LOGGERS:
        loggers[name] = {"handlers": root_handlers, "level": "INFO", "propagate": False}
    for name in QUIET_LOGGERS:
        loggers[name] = {"handlers": root_handlers, "level": "WARNING", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "cascade_categorizer.logger.ColourizedFormatter",
                "format": LOG_FORMAT,
            },
            "plain": {
                "format": LOG_FORMAT,
            },
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
