import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}

TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
USE_REDIS = _bool_env("USE_REDIS", False)
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_HTTP_TIMEOUT_SECONDS = _float_env("GEMINI_HTTP_TIMEOUT_SECONDS", 15.0)
EXTRACTION_TIMEOUT_SECONDS = _float_env("EXTRACTION_TIMEOUT_SECONDS", 30.0)

ADMIN_ACCESS_CODE = os.getenv("ADMIN_ACCESS_CODE", "")

REGISTRATION_LOG_METRICS_ENABLED = _bool_env("REGISTRATION_LOG_METRICS_ENABLED", False)
REGISTRATION_METRICS_BACKEND = os.getenv("REGISTRATION_METRICS_BACKEND", "noop")
STATSD_HOST = os.getenv("STATSD_HOST", "localhost")
STATSD_PORT = _int_env("STATSD_PORT", 8125)
