"""Provider-facing domain types and ports.

The two payment networks have different protocols but the reconciliation
endpoint only needs one capability from either: "tell me whether this
transaction really succeeded". That is the ``PaymentProvider`` port. The
reference the buyer brings back is modelled as a tagged variant,
``CardSession`` or ``ApprovalOrder``, so dispatch happens on the type
rather than on string comparisons spread through the endpoint.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol, Union

from apps.orders.domain import PaymentMethod

from .errors import ValidationError


# ---- Tagged variant ----
@dataclass(frozen=True)
class CardSession:
    """A hosted checkout session on the card network."""

    session_id: str
    method = PaymentMethod.CARD_NETWORK

    @property
    def ref(self) -> str:
        return self.session_id


@dataclass(frozen=True)
class ApprovalOrder:
    """A buyer-approved order on the approval network, awaiting capture."""

    provider_order_id: str
    method = PaymentMethod.APPROVAL_NETWORK

    @property
    def ref(self) -> str:
        return self.provider_order_id


PaymentReference = Union[CardSession, ApprovalOrder]


def reference_for(method: PaymentMethod, ref: str) -> PaymentReference:
    """Build the variant matching ``method``."""
    if method is PaymentMethod.CARD_NETWORK:
        return CardSession(session_id=ref)
    return ApprovalOrder(provider_order_id=ref)


# ---- Value objects ----
@dataclass(frozen=True)
class LineItem:
    """A priced line sent to a provider when opening a session/order."""

    name: str
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class Customer:
    """Buyer details forwarded to the provider."""

    email: str
    name: str


@dataclass(frozen=True)
class CardSessionCreated:
    session_id: str
    session_url: str


@dataclass(frozen=True)
class CardSessionStatus:
    """Result of looking up a card-network session.

    Attributes:
        session_id: The session looked up.
        status: Provider payment status (``paid``, ``unpaid``, ...).
        amount: Amount in major units.
        currency: Upper-case ISO code.
        transaction_id: Canonical id to store (the session id).
        raw: Provider payload for audit.
    """

    session_id: str
    status: str
    amount: Decimal
    currency: str
    transaction_id: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureDetails:
    """Result of capturing an approval-network order."""

    provider_order_id: str
    capture_id: Optional[str]
    status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VerifiedPayment:
    """What a provider confirmed about a transaction.

    Attributes:
        method: Network that confirmed it.
        transaction_id: Canonical reference stored on the Order and Payment.
        amount: Amount the network says was paid, when it reports one.
        currency: Currency the network reports, when it reports one.
        raw: Provider payload, stored as the gateway response.
    """

    method: PaymentMethod
    transaction_id: str
    amount: Optional[Decimal]
    currency: Optional[str]
    raw: dict = field(default_factory=dict)


# ---- Ports ----
class PaymentProvider(Protocol):
    """Capability shared by both networks."""

    method: PaymentMethod

    def verify(self, ref: str) -> VerifiedPayment:
        """Confirm the transaction succeeded.

        Raises:
            ProviderUnavailable: Outcome unknown (timeout, transport, 5xx).
            TransactionNotFound: Unknown reference.
            PaymentNotSucceeded: Known reference, not paid.
        """
        raise NotImplementedError()


class CardNetworkPort(PaymentProvider, Protocol):
    """Redirect-style network: hosted session, confirmed by lookup."""

    def create_session(
        self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
        customer: Customer, correlation_id: str = "",
    ) -> CardSessionCreated:
        raise NotImplementedError()

    def retrieve_session(self, session_id: str) -> CardSessionStatus:
        raise NotImplementedError()


class ApprovalNetworkPort(PaymentProvider, Protocol):
    """Create-then-approve-then-capture network."""

    def create_order(
        self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
        customer: Customer, correlation_id: str = "",
    ) -> str:
        raise NotImplementedError()

    def capture_order(self, provider_order_id: str) -> CaptureDetails:
        raise NotImplementedError()


def require_customer_identity(customer: Customer) -> None:
    """Raise ``ValidationError`` unless email and name are present.

    The approval network's widget does not collect buyer details, so this
    check runs before any network call is made.
    """
    field_errors = {}
    if not (customer.email or "").strip():
        field_errors["email"] = "Email is required"
    if not (customer.name or "").strip():
        field_errors["name"] = "Name is required"
    if field_errors:
        raise ValidationError("CUSTOMER_INFO_REQUIRED", field_errors=field_errors)
