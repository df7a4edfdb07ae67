from decimal import Decimal

import pytest

from apps.payments import http_adapters
from apps.payments.config import ProviderConfig, ProviderConfigHolder


@pytest.fixture(autouse=True)
def reset_breakers():
    # Breakers and the token cache are process-wide; don't leak state between tests.
    http_adapters.card_cb.on_success()
    http_adapters.approval_cb.on_success()
    http_adapters._token_cache.clear()
    yield
    http_adapters.card_cb.on_success()
    http_adapters.approval_cb.on_success()
    http_adapters._token_cache.clear()


@pytest.fixture
def make_holder():
    """Holder whose snapshots are built in memory, without touching the database."""

    def _make(**overrides):
        base = dict(
            currency="AUD",
            tax_rate=Decimal("10"),
            card_api_base="https://card.test",
            card_secret_key="sk_test_123",
            card_webhook_secret="whsec_test",
            card_webhook_tolerance=300,
            approval_api_base="https://approval.test",
            approval_client_id="client-id",
            approval_client_secret="client-secret",
            success_url="https://shop.test/ok?session_id={CHECKOUT_SESSION_ID}",
            cancel_url="https://shop.test/cancel",
            timeout=2.0,
            sandbox=False,
        )
        base.update(overrides)
        return ProviderConfigHolder(loader=lambda generation: ProviderConfig(generation=generation, **base))

    return _make
