import hashlib
import hmac
import json
import time

import pytest
from django.apps import apps
from django.core.cache import cache

from apps.payments.config import ProviderConfigHolder, billing_settings_stamp


@pytest.fixture(autouse=True)
def sandbox_payments(settings):
    """Tests run against the sandbox doubles unless they opt out."""
    settings.PAYMENTS_SANDBOX = True
    settings.PAYMENTS_CARD_WEBHOOK_SECRET = "whsec_test"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    yield settings


@pytest.fixture(autouse=True)
def provider_config(sandbox_payments):
    """A fresh config holder per test; it loads lazily from the test settings."""
    app = apps.get_app_config("payments")
    previous = app.provider_config
    app.provider_config = ProviderConfigHolder(stamp=billing_settings_stamp)
    yield app.provider_config
    app.provider_config = previous


@pytest.fixture(autouse=True)
def fresh_cache():
    # Throttle counters live in the locmem cache.
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def cart():
    return [
        {"productId": "p-1", "name": "Notebook", "price": "100.00", "quantity": 2},
        {"productId": "p-2", "name": "Pen", "price": "50.00", "quantity": 1},
    ]


@pytest.fixture
def customer():
    return {
        "email": "ada@example.com",
        "name": "Ada Lovelace",
        "address": "1 Analytical St",
        "city": "Sydney",
        "state": "NSW",
        "postcode": "2000",
    }


@pytest.fixture
def sign_webhook():
    """Build ``(body, header)`` signed the way the card network signs events."""

    def _sign(payload: dict, secret: str = "whsec_test", timestamp=None):
        body = json.dumps(payload)
        ts = int(timestamp if timestamp is not None else time.time())
        mac = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
        return body, f"t={ts},v1={mac}"

    return _sign
