from decimal import Decimal

import pytest

from apps.orders.domain import PaymentMethod
from apps.orders.models import Order, PaymentAnomaly
from apps.orders.repository import OrderRepository
from apps.payments.adapters import SandboxApprovalNetwork, SandboxCardNetwork
from apps.payments.domain import Customer, VerifiedPayment
from apps.payments.errors import PaymentNotSucceeded
from apps.payments.models import BillingSettings
from apps.payments.reconciliation import ReconciliationService
from apps.payments.schemas import ConfirmPaymentDTO

pytestmark = pytest.mark.django_db


def dto(cart, customer, ref="ORDER-1", method="approval-network"):
    return ConfirmPaymentDTO.model_validate(
        {"paymentMethod": method, "providerTransactionRef": ref, "items": cart, "customerInfo": customer}
    )


class CountingProvider:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def __call__(self, ref, holder=None):
        self.calls += 1
        return self.inner


def test_existing_order_short_circuits_provider(cart, customer):
    provider = CountingProvider(SandboxApprovalNetwork())
    svc = ReconciliationService(provider_for=provider)

    first = svc.confirm(dto(cart, customer))
    second = svc.confirm(dto(cart, customer))

    assert first.created is True and second.created is False
    assert second.order.id == first.order.id
    assert provider.calls == 1


def test_verification_failure_writes_nothing(cart, customer):
    svc = ReconciliationService(provider_for=CountingProvider(SandboxApprovalNetwork(declined={"ORDER-1"})))
    with pytest.raises(PaymentNotSucceeded):
        svc.confirm(dto(cart, customer))
    assert Order.objects.count() == 0


class Charged:
    method = PaymentMethod.CARD_NETWORK

    def __init__(self, amount, currency="AUD"):
        self.amount = Decimal(amount)
        self.currency = currency

    def verify(self, ref):
        return VerifiedPayment(method=self.method, transaction_id=ref, amount=self.amount,
                               currency=self.currency, raw={"id": ref})


def test_amount_mismatch_is_recorded_but_order_written(cart, customer):
    svc = ReconciliationService(provider_for=lambda ref, holder=None: Charged("300.00"))
    res = svc.confirm(dto(cart, customer, ref="cs_1", method="card-network"), correlation_id="att-1")

    assert res.created is True
    assert res.order.total_amount == Decimal("275.00")
    anomaly = PaymentAnomaly.objects.get(transaction_id="cs_1")
    assert anomaly.source == "reconciliation"
    assert anomaly.detail["reason"] == "AMOUNT_MISMATCH"
    assert anomaly.detail["verified_amount"] == "300.00"
    assert anomaly.detail["ledger_total"] == "275.00"
    assert anomaly.payment == res.payment
    assert anomaly.correlation_id == "att-1"
    # overpayment still fulfils; the row keeps what was charged
    assert (res.order.status, res.order.payment_status) == ("confirmed", "paid")
    assert res.payment.amount == Decimal("300.00")


def test_underpaid_transaction_is_held_for_review(cart, customer):
    svc = ReconciliationService(provider_for=lambda ref, holder=None: Charged("1.00"))
    res = svc.confirm(dto(cart, customer, ref="cs_1", method="card-network"))

    assert res.created is True
    order = Order.objects.get(payment_transaction_id="cs_1")
    assert (order.status, order.payment_status) == ("pending", "pending")
    assert order.total_amount == Decimal("275.00")
    assert res.payment.amount == Decimal("1.00")
    anomaly = PaymentAnomaly.objects.get(transaction_id="cs_1")
    assert anomaly.detail["reason"] == "AMOUNT_MISMATCH"
    assert anomaly.detail["held_for_review"] is True


def test_ledger_records_the_charged_currency(cart, customer):
    card = SandboxCardNetwork(currency="AUD")
    session = card.create_session(Decimal("275.00"), "usd", [], Decimal("25.00"),
                                  Customer(email="ada@example.com", name="Ada"))
    svc = ReconciliationService(provider_for=lambda ref, holder=None: card)
    res = svc.confirm(dto(cart, customer, ref=session.session_id, method="card-network"))

    assert res.order.currency == "USD"
    assert res.payment.currency == "USD"
    assert res.order.payment_status == "pending"
    anomaly = PaymentAnomaly.objects.get(transaction_id=session.session_id)
    assert anomaly.detail["reason"] == "CURRENCY_MISMATCH"
    assert anomaly.detail["ledger_currency"] == "AUD"


def test_matching_amount_records_no_anomaly(cart, customer):
    card = SandboxCardNetwork(currency="AUD")
    card.amounts["cs_1"] = Decimal("275.00")
    svc = ReconciliationService(provider_for=lambda ref, holder=None: card)
    svc.confirm(dto(cart, customer, ref="cs_1", method="card-network"))
    assert PaymentAnomaly.objects.count() == 0


def test_losing_a_race_returns_the_winner(cart, customer):
    # The winner commits between our lookup and our insert.
    winner = ReconciliationService(provider_for=lambda ref, holder=None: SandboxApprovalNetwork()).confirm(
        dto(cart, customer)
    )

    class LateRepo(OrderRepository):
        looked_up = False

        def find_by_transaction_id(self, ref):
            if not self.looked_up:
                self.looked_up = True
                return None
            return super().find_by_transaction_id(ref)

    svc = ReconciliationService(repo=LateRepo(), provider_for=lambda ref, holder=None: SandboxApprovalNetwork())
    res = svc.confirm(dto(cart, customer))

    assert res.created is False
    assert res.order.id == winner.order.id
    assert Order.objects.filter(payment_transaction_id="ORDER-1").count() == 1


def test_tax_rate_comes_from_billing_settings(cart, customer, provider_config):
    BillingSettings.objects.create(tax_rate=Decimal("0"))  # save reloads the config
    assert provider_config.current.tax_rate == Decimal("0")

    res = ReconciliationService(provider_for=lambda ref, holder=None: SandboxApprovalNetwork()).confirm(
        dto(cart, customer)
    )
    assert res.order.total_amount == Decimal("250.00")
    assert res.order.tax_amount == Decimal("0.00")
