from decimal import Decimal
from uuid import uuid4

import pytest

from apps.orders.domain import NewOrder, NewOrderItem, NewPayment, PaymentMethod
from apps.orders.repository import OrderRepository

DETAIL_URL = "/api/orders/{oid}/"
LIST_URL = "/api/orders/"
BY_TX_URL = "/api/payments/orders/by-transaction/{ref}/"


def seed(ref="cs_test_1"):
    order = NewOrder(
        guest_email="ada@example.com",
        billing_address={"name": "Ada"},
        shipping_address={"name": "Ada"},
        subtotal=Decimal("200.00"),
        tax_amount=Decimal("20.00"),
        total_amount=Decimal("220.00"),
        currency="AUD",
        payment_method=PaymentMethod.CARD_NETWORK,
        payment_transaction_id=ref,
    )
    items = [NewOrderItem("p-1", "Notebook", 2, Decimal("100.00"), Decimal("20.00"), Decimal("200.00"))]
    payment = NewPayment(provider=PaymentMethod.CARD_NETWORK, transaction_id=ref,
                         amount=Decimal("220.00"), currency="AUD")
    return OrderRepository().create_order_atomic(order, items, payment)


@pytest.mark.django_db
def test_get_order_by_id_returns_200_and_payload(client):
    o = seed()
    r = client.get(DETAIL_URL.format(oid=str(o.id)))
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == str(o.id)
    assert body["orderNumber"] == o.order_number
    assert body["status"] == "confirmed"
    assert body["paymentStatus"] == "paid"
    assert body["total"] == "220.00"
    assert body["currency"] == "AUD"
    assert body["transactionId"] == "cs_test_1"
    assert body["items"][0]["productName"] == "Notebook"
    assert body["items"][0]["totalPrice"] == "200.00"


@pytest.mark.django_db
def test_get_order_not_found_returns_404(client):
    r = client.get(DETAIL_URL.format(oid=str(uuid4())))
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_list_orders_returns_paginated_array(client):
    seed("cs_a")
    seed("cs_b")
    r = client.get(LIST_URL, {"page_size": 1})
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 2
    assert body["page_size"] == 1
    assert len(body["results"]) == 1
    assert {"id", "orderNumber", "status", "total", "currency"} <= set(body["results"][0].keys())
    assert "items" not in body["results"][0]


@pytest.mark.django_db
def test_list_orders_bad_page_param(client):
    r = client.get(LIST_URL, {"page": "x"})
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAGINATION"


@pytest.mark.django_db
def test_lookup_by_transaction_reference(client):
    o = seed("cs_lookup")
    r = client.get(BY_TX_URL.format(ref="cs_lookup"))
    assert r.status_code == 200
    assert r.json()["orderNumber"] == o.order_number

    assert client.get(BY_TX_URL.format(ref="cs_missing")).status_code == 404


@pytest.mark.django_db
def test_response_carries_request_and_correlation_ids(client):
    r = client.get(LIST_URL, HTTP_X_CORRELATION_ID="attempt-42")
    assert r["X-Correlation-ID"] == "attempt-42"
    assert r["X-Request-ID"]
