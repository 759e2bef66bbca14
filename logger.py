"""
Loguru setup for the StyleDecor API.

Console output is human-readable by default; LOG_JSON=1 switches it to one
JSON object per line for log shippers. LOG_FILE adds a rotating file sink
for warnings and errors. Stdlib loggers (uvicorn, pymongo) are routed into
loguru so everything shares one format.
"""
import os
import sys
import logging

from loguru import logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "").lower() in {"1", "true", "yes"}
LOG_FILE = os.getenv("LOG_FILE", "")

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = LOG_LEVEL, json_output: bool = LOG_JSON, log_file: str = LOG_FILE):
    logger.remove()
    # request_id is bound per request by the access-log middleware
    logger.configure(extra={"request_id": "-"})
    if json_output:
        logger.add(sys.stdout, level=level, serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=CONSOLE_FORMAT)
    if log_file:
        logger.add(log_file, level="WARNING", rotation="10 MB", retention="1 month", compression="zip", serialize=json_output)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # Access lines come from our own middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


__all__ = ["logger", "setup_logging"]
