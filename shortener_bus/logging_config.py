# shortener_bus/logging_config.py

import logging
import sys

from shortener_bus import config


def setup_logging(service_name: str, level: str = None) -> logging.Logger:
    """
    Configures the root logger for a service process.
    Call it once at startup, before the broker client connects.
    """
    logging.basicConfig(
        level=level or config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    # Silence noisy libraries
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    return logging.getLogger(service_name)
