import httpx
import pytest

from apps.payments import http_adapters
from apps.payments.errors import PaymentNotSucceeded, ProviderUnavailable
from apps.payments.http_adapters import HttpCardNetworkClient


class R:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body


PAID = {"id": "cs_1", "payment_status": "paid", "amount_total": 22000, "currency": "aud"}


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)


def test_card_retries_on_5xx(monkeypatch, settings, make_holder):
    settings.HTTP_RETRY_MAX = 1
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return R(503)
        # second attempt says it is a retry
        assert headers["X-Retry-Count"] == "1"
        return R(200, PAID)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    assert HttpCardNetworkClient(make_holder()).verify("cs_1").transaction_id == "cs_1"
    assert calls["n"] == 2


def test_no_retry_and_no_trip_on_business_answer(monkeypatch, settings, make_holder):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_get(self, url, **kwargs):
        calls["n"] += 1
        return R(200, {"id": "cs_1", "payment_status": "unpaid"})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    for _ in range(10):
        with pytest.raises(PaymentNotSucceeded):
            HttpCardNetworkClient(make_holder()).verify("cs_1")
    assert calls["n"] == 10
    assert http_adapters.card_cb.state == "CLOSED"


def test_circuit_opens_after_repeated_failures(monkeypatch, settings, make_holder):
    settings.HTTP_RETRY_MAX = 0
    calls = {"n": 0}

    def fake_get(self, url, **kwargs):
        calls["n"] += 1
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    client = HttpCardNetworkClient(make_holder())
    for _ in range(http_adapters.card_cb.fail_threshold):
        with pytest.raises(ProviderUnavailable) as exc:
            client.verify("cs_1")
        assert exc.value.code == "PROVIDER_UNAVAILABLE"

    assert http_adapters.card_cb.state == "OPEN"
    with pytest.raises(ProviderUnavailable) as exc:
        client.verify("cs_1")
    assert exc.value.code == "CIRCUIT_OPEN"
    assert calls["n"] == http_adapters.card_cb.fail_threshold


def test_half_open_probe_closes_circuit(monkeypatch, settings, make_holder):
    settings.HTTP_RETRY_MAX = 0
    cb = http_adapters.card_cb
    settings.HTTP_CIRCUIT_RESET_TIMEOUT = 0.0
    for _ in range(cb.fail_threshold):
        cb.on_failure()

    assert cb.state == "HALF_OPEN"
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, **kw: R(200, PAID), raising=True)
    HttpCardNetworkClient(make_holder()).verify("cs_1")
    assert cb.state == "CLOSED"


def test_breakers_are_per_network():
    for _ in range(http_adapters.card_cb.fail_threshold):
        http_adapters.card_cb.on_failure()
    assert http_adapters.card_cb.state == "OPEN"
    assert http_adapters.approval_cb.state == "CLOSED"


def test_breaker_thresholds_follow_settings(settings):
    settings.HTTP_CIRCUIT_FAIL_THRESHOLD = 2
    settings.HTTP_CIRCUIT_RESET_TIMEOUT = 120.0
    cb = http_adapters.approval_cb
    assert (cb.fail_threshold, cb.reset_timeout) == (2, 120.0)

    cb.on_failure()
    assert cb.state == "CLOSED"
    cb.on_failure()
    assert cb.state == "OPEN"
