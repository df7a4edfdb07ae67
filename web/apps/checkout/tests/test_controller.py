import json

import httpx
import pytest

from apps.checkout.controller import (
    APPROVAL_NETWORK,
    CARD_NETWORK,
    GENERIC_PROVIDER_MESSAGE,
    PROVIDER_ERROR,
    SUCCESS,
    VALIDATION_ERROR,
    CheckoutController,
)

ITEMS = [{"productId": "p-1", "name": "Notebook", "price": "100.00", "quantity": 2}]
BUYER = {"email": "ada@example.com", "name": "Ada Lovelace", "address": "1 Analytical St", "city": "Sydney"}


def controller(handler):
    seen = []

    def record(request):
        seen.append(request)
        return handler(request)

    client = httpx.Client(base_url="https://shop.test/api", transport=httpx.MockTransport(record))
    return CheckoutController(client=client), seen


def test_forms_differ_per_network():
    c = CheckoutController(base_url="https://shop.test/api")
    card = [f.name for f in c.form_fields(CARD_NETWORK)]
    approval = [f.name for f in c.form_fields(APPROVAL_NETWORK)]
    assert card[:2] == ["email", "name"] and "address" in card
    assert approval == ["email", "name"]
    with pytest.raises(ValueError):
        c.form_fields("cash")


@pytest.mark.parametrize(
    "customer,expected",
    [
        ({"name": "Ada"}, {"email": "Email is required"}),
        ({"email": "ada@example.com"}, {"name": "Name is required"}),
        ({"email": "nope", "name": "Ada"}, {"email": "Enter a valid email address"}),
        (BUYER, {}),
    ],
)
def test_validate_customer(customer, expected):
    assert CheckoutController(base_url="https://shop.test/api").validate_customer(customer) == expected


def test_invalid_customer_makes_no_call():
    c, seen = controller(lambda req: httpx.Response(200, json={}))
    out = c.approval_create_order(ITEMS, {"email": "", "name": "Ada"})
    assert out.kind == VALIDATION_ERROR
    assert out.field_errors == {"email": "Email is required"}
    assert seen == []


def test_card_checkout_redirects_then_confirms():
    def handler(req):
        if req.url.path == "/api/payments/create-session/":
            return httpx.Response(200, json={"sessionId": "cs_1", "sessionUrl": "https://pay.test/cs_1"})
        assert req.url.path == "/api/payments/confirm/"
        return httpx.Response(201, json={"order": {"orderNumber": "ORD-1", "total": "220.00"},
                                         "payment": {"transactionId": "cs_1", "method": "card-network"}})

    c, seen = controller(handler)
    started = c.start_card_checkout(ITEMS, BUYER)
    assert started.kind == SUCCESS and started.redirect_url == "https://pay.test/cs_1"

    done = c.complete_card_checkout("cs_1", ITEMS, BUYER)
    assert done.ok
    assert done.order["orderNumber"] == "ORD-1"

    # one attempt, one correlation id
    ids = {r.headers["X-Correlation-ID"] for r in seen}
    assert ids == {c.correlation_id}
    assert json.loads(seen[1].read())["providerTransactionRef"] == "cs_1"


def test_new_attempt_rotates_correlation_id():
    c = CheckoutController(base_url="https://shop.test/api")
    first = c.correlation_id
    assert c.new_attempt() != first


def test_approval_flow():
    def handler(req):
        if req.url.path.endswith("/create-order/"):
            return httpx.Response(200, json={"providerOrderId": "ORDER1"})
        return httpx.Response(200, json={"order": {"orderNumber": "ORD-1"}})

    c, _ = controller(handler)
    created = c.approval_create_order(ITEMS, {"email": "ada@example.com", "name": "Ada"})
    assert created.ok and created.provider_order_id == "ORDER1"
    assert c.approval_approved("ORDER1", ITEMS, {"email": "ada@example.com", "name": "Ada"}).ok


def test_server_validation_errors_map_to_fields():
    body = {"detail": "INVALID_REQUEST", "errors": {"customerInfo.email": "value is not a valid email address"}}
    c, _ = controller(lambda req: httpx.Response(400, json=body))
    out = c.complete_card_checkout("cs_1", ITEMS, BUYER)
    assert out.kind == VALIDATION_ERROR
    assert out.field_errors == {"email": "value is not a valid email address"}


@pytest.mark.parametrize("status,retryable", [(402, False), (502, True), (503, True), (500, False)])
def test_provider_errors_are_generic(status, retryable):
    c, _ = controller(lambda req: httpx.Response(status, json={"detail": "INSTRUMENT_DECLINED"}))
    out = c.complete_card_checkout("cs_1", ITEMS, BUYER)
    assert out.kind == PROVIDER_ERROR
    assert out.message == GENERIC_PROVIDER_MESSAGE
    assert "INSTRUMENT_DECLINED" not in out.message
    assert out.retryable is retryable


def test_unreachable_api_is_retryable():
    def handler(req):
        raise httpx.ConnectError("down", request=req)

    c, _ = controller(handler)
    out = c.start_card_checkout(ITEMS, BUYER)
    assert out.kind == PROVIDER_ERROR and out.retryable is True
