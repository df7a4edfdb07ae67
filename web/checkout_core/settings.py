"""Django settings for the checkout reconciliation service.

Every tunable is read from the environment so the same module serves local
development, the test suite and the gunicorn deployment. Payment provider
credentials here are defaults only: an admin-saved ``BillingSettings`` row
overrides them at runtime (see ``apps.payments.config``).
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-checkout-core")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
    "apps.payments",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.CorrelationIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "checkout_core.urls"
WSGI_APPLICATION = "checkout_core.wsgi.application"

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "app"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "app"),
            "HOST": os.getenv("POSTGRES_HOST", "orders-db"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("POSTGRES_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

CACHES = {
    "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "payments_confirm": os.getenv("THROTTLE_PAYMENTS_CONFIRM", "60/min"),
        "payments_create": os.getenv("THROTTLE_PAYMENTS_CREATE", "60/min"),
    },
}

# ---- Checkout / payments ----
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "AUD")
CHECKOUT_TAX_RATE = os.getenv("CHECKOUT_TAX_RATE", "10")  # percent
CHECKOUT_DEFAULT_COUNTRY = os.getenv("CHECKOUT_DEFAULT_COUNTRY", "Australia")
CHECKOUT_SUCCESS_URL = os.getenv(
    "CHECKOUT_SUCCESS_URL", "http://localhost:3000/order-confirmation?session_id={CHECKOUT_SESSION_ID}"
)
CHECKOUT_CANCEL_URL = os.getenv("CHECKOUT_CANCEL_URL", "http://localhost:3000/checkout-cancelled")

# Sandbox doubles replace both provider clients; refused by system check when DEBUG is off.
PAYMENTS_SANDBOX = _env_bool("PAYMENTS_SANDBOX", False)

PAYMENTS_CARD_API_BASE = os.getenv("PAYMENTS_CARD_API_BASE", "https://api.stripe.com")
PAYMENTS_CARD_SECRET_KEY = os.getenv("PAYMENTS_CARD_SECRET_KEY", "")
PAYMENTS_CARD_WEBHOOK_SECRET = os.getenv("PAYMENTS_CARD_WEBHOOK_SECRET", "")
PAYMENTS_CARD_WEBHOOK_TOLERANCE = int(os.getenv("PAYMENTS_CARD_WEBHOOK_TOLERANCE", "300"))

PAYMENTS_APPROVAL_API_BASE = os.getenv("PAYMENTS_APPROVAL_API_BASE", "https://api-m.sandbox.paypal.com")
PAYMENTS_APPROVAL_CLIENT_ID = os.getenv("PAYMENTS_APPROVAL_CLIENT_ID", "")
PAYMENTS_APPROVAL_CLIENT_SECRET = os.getenv("PAYMENTS_APPROVAL_CLIENT_SECRET", "")

PAYMENTS_HTTP_TIMEOUT_SECS = float(os.getenv("PAYMENTS_HTTP_TIMEOUT_SECS", "10"))
# How often each worker checks BillingSettings for changes saved by another worker
PAYMENTS_CONFIG_TTL_SECS = float(os.getenv("PAYMENTS_CONFIG_TTL_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Logging ----
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "correlation": {"()": "gateway.logging_filters.CorrelationIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(correlation_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["correlation"],
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
    },
}
