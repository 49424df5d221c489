import logging
from pythonjsonlogger import jsonlogger
import sys

APP_LOGGER_NAME = "speedtest_webhook"


def setup_logger(name=APP_LOGGER_NAME, level="INFO"):
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)

        formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={"asctime": "ts", "levelname": "level"},
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level)
    return logger

logger = setup_logger()
