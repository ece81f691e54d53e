import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() in ("true", "1", "t", "yes")


RABBITMQ_URL = os.getenv("RABBITMQ_URL", "amqp://localhost:5672")

# Reconnect schedule: initial delay grows by the multiplier up to the ceiling.
RECONNECT_INITIAL_DELAY = float(os.getenv("RABBITMQ_RECONNECT_DELAY", "5"))
RECONNECT_MAX_DELAY = float(os.getenv("RABBITMQ_RECONNECT_MAX_DELAY", "60"))
RECONNECT_MULTIPLIER = float(os.getenv("RABBITMQ_RECONNECT_MULTIPLIER", "2"))
RECONNECT_JITTER = float(os.getenv("RABBITMQ_RECONNECT_JITTER", "0.1"))

PREFETCH_COUNT = int(os.getenv("RABBITMQ_PREFETCH_COUNT", "10"))
PUBLISH_TIMEOUT = float(os.getenv("RABBITMQ_PUBLISH_TIMEOUT", "5"))
# Extra {exchange}_dlx exchange and {queue}_dlq queues; queue arguments are the same either way.
DEAD_LETTER_QUEUES = _env_bool("RABBITMQ_DEAD_LETTER_QUEUES", "true")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
