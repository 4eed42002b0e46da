# notifier/config.py
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def get_env_int(key: str, default: int) -> int:
    """Read an integer env var, falling back to the default when unset or unparsable."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def get_env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def get_env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() == "true"


# Kafka Configuration
KAFKA_BROKER_URLS = os.getenv("KAFKA_BROKER_URLS", "localhost:9092")
KAFKA_TOPIC_NAME = os.getenv("KAFKA_TOPIC_NAME", "urlshortener.notifications.email")
KAFKA_CONSUMER_GROUP_ID = os.getenv("KAFKA_CONSUMER_GROUP_ID", "notification-service-consumer-group")
KAFKA_CLIENT_ID = os.getenv("KAFKA_CLIENT_ID", "notification-service-consumer-client")
KAFKA_AUTO_OFFSET_RESET = os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest")
KAFKA_CONSUMER_MAX_RETRIES = get_env_int("KAFKA_CONSUMER_MAX_RETRIES", 5)
KAFKA_CONSUMER_RETRY_BACKOFF_S = get_env_float("KAFKA_CONSUMER_RETRY_BACKOFF_S", 1.0)
KAFKA_CONSUMER_POLL_TIMEOUT_S = get_env_float("KAFKA_CONSUMER_POLL_TIMEOUT_S", 1.0)

# SMTP Configuration (no defaults for connection settings: all are required)
EMAIL_HOST = os.getenv("EMAIL_HOST")
EMAIL_PORT = os.getenv("EMAIL_PORT")
EMAIL_SECURE = os.getenv("EMAIL_SECURE")
EMAIL_AUTH_USERNAME = os.getenv("EMAIL_AUTH_USERNAME")
EMAIL_AUTH_PASSWORD = os.getenv("EMAIL_AUTH_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM") or EMAIL_AUTH_USERNAME
EMAIL_TIMEOUT_S = get_env_float("EMAIL_TIMEOUT_S", 30.0)
EMAIL_VERIFY_ON_STARTUP = get_env_bool("EMAIL_VERIFY_ON_STARTUP", False)

# Service Discovery Configuration
ENABLE_DISCOVERY_CLIENT = os.getenv("ENABLE_DISCOVERY_CLIENT", "true").strip().lower() != "false"
DISCOVERY_SERVER_HOST = os.getenv("DISCOVERY_SERVER_HOST", "127.0.0.1")
DISCOVERY_SERVER_PORT = get_env_int("DISCOVERY_SERVER_PORT", 8500)
DISCOVERY_SERVER_MAX_RETRIES = get_env_int("DISCOVERY_SERVER_MAX_RETRIES", 5)
DISCOVERY_RETRY_BACKOFF_S = get_env_float("DISCOVERY_RETRY_BACKOFF_S", 1.0)
DISCOVERY_HEARTBEAT_INTERVAL_S = get_env_float("DISCOVERY_HEARTBEAT_INTERVAL_S", 15.0)

# HTTP Configuration
SERVER_PORT = get_env_int("SERVER_PORT", 6789)
METRICS_PATH = os.getenv("METRICS_PATH", "/metrics")

# Logging Configuration
LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL
}

LOG_LEVEL = LOG_LEVEL_MAP.get(os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
LOGGING_CONSOLE_ENABLED = get_env_bool("LOGGING_CONSOLE_ENABLED", False)
LOGGING_FILE_ENABLED = get_env_bool("LOGGING_FILE_ENABLED", False)
LOGGING_FILE_BASE_PATH = os.getenv("LOGGING_FILE_BASE_PATH", "/tmp")
LOGGING_STREAM_ENABLED = get_env_bool("LOGGING_STREAM_ENABLED", False)
LOGGING_STREAM_HOST = os.getenv("LOGGING_STREAM_HOST", "localhost")
LOGGING_STREAM_PORT = get_env_int("LOGGING_STREAM_PORT", 5000)

SERVICE_NAME = "urlshortener-notification-service"
