"""In-process sandbox doubles for the payment network ports.

These doubles implement ``CardNetworkPort`` and ``ApprovalNetworkPort``
without any network calls. They are injected by ``providers`` when
``settings.PAYMENTS_SANDBOX`` is on, which a system check forbids outside
DEBUG deployments, and are used directly by the test suite.

Behaviour is deterministic: every reference is treated as paid unless it
was listed in ``declined`` or ``unknown`` at construction.
"""

import uuid
from decimal import Decimal
from typing import Iterable, List, Optional

from apps.orders.domain import PaymentMethod, money

from .domain import (
    ApprovalNetworkPort,
    CaptureDetails,
    CardNetworkPort,
    CardSessionCreated,
    CardSessionStatus,
    Customer,
    LineItem,
    VerifiedPayment,
    require_customer_identity,
)
from .errors import PaymentNotSucceeded, TransactionNotFound


class _SandboxBase:
    def __init__(self, currency: str = "AUD", declined: Iterable[str] = (), unknown: Iterable[str] = ()):
        self.currency = currency
        self.declined = set(declined)
        self.unknown = set(unknown)
        # Amounts and currencies of sessions/orders opened through this instance.
        self.amounts: dict[str, Decimal] = {}
        self.currencies: dict[str, str] = {}

    def _check(self, ref: str) -> None:
        if ref in self.unknown:
            raise TransactionNotFound(provider=self.method.value, transaction_id=ref)


class SandboxCardNetwork(_SandboxBase, CardNetworkPort):
    """Sandbox card network: sessions are paid as soon as they are looked up."""

    method = PaymentMethod.CARD_NETWORK

    def __init__(self, success_url: str = "", **kwargs):
        super().__init__(**kwargs)
        self.success_url = success_url

    def create_session(self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
                       customer: Customer, correlation_id: str = "") -> CardSessionCreated:
        session_id = f"cs_sandbox_{uuid.uuid4().hex}"
        self.amounts[session_id] = money(amount)
        self.currencies[session_id] = currency.upper()
        url = self.success_url.replace("{CHECKOUT_SESSION_ID}", session_id) if self.success_url else ""
        return CardSessionCreated(session_id=session_id, session_url=url)

    def retrieve_session(self, session_id: str) -> CardSessionStatus:
        self._check(session_id)
        return CardSessionStatus(
            session_id=session_id,
            status="unpaid" if session_id in self.declined else "paid",
            amount=self.amounts.get(session_id),
            currency=self.currencies.get(session_id, self.currency),
            transaction_id=session_id,
            raw={"id": session_id, "sandbox": True},
        )

    def verify(self, ref: str) -> VerifiedPayment:
        st = self.retrieve_session(ref)
        if st.status != "paid":
            raise PaymentNotSucceeded(provider=self.method.value, transaction_id=ref, status=st.status)
        return VerifiedPayment(method=self.method, transaction_id=st.transaction_id,
                               amount=st.amount, currency=st.currency, raw=st.raw)


class SandboxApprovalNetwork(_SandboxBase, ApprovalNetworkPort):
    """Sandbox approval network: capture completes immediately."""

    method = PaymentMethod.APPROVAL_NETWORK

    def create_order(self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
                     customer: Customer, correlation_id: str = "") -> str:
        require_customer_identity(customer)
        provider_order_id = f"SANDBOX-{uuid.uuid4().hex[:17].upper()}"
        self.amounts[provider_order_id] = money(amount)
        self.currencies[provider_order_id] = currency.upper()
        return provider_order_id

    def capture_order(self, provider_order_id: str) -> CaptureDetails:
        self._check(provider_order_id)
        status = "DECLINED" if provider_order_id in self.declined else "COMPLETED"
        amount: Optional[Decimal] = self.amounts.get(provider_order_id)
        return CaptureDetails(
            provider_order_id=provider_order_id,
            capture_id=f"CAP-{provider_order_id}",
            status=status,
            amount=amount,
            currency=self.currencies.get(provider_order_id, self.currency),
            raw={"id": provider_order_id, "status": status, "sandbox": True},
        )

    def verify(self, ref: str) -> VerifiedPayment:
        details = self.capture_order(ref)
        if details.status != "COMPLETED":
            raise PaymentNotSucceeded(provider=self.method.value, transaction_id=ref, status=details.status)
        return VerifiedPayment(method=self.method, transaction_id=details.provider_order_id,
                               amount=details.amount, currency=details.currency, raw=details.raw)
