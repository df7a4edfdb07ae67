"""Domain types and the tax/total calculator for the order ledger.

This module contains the status enumerations shared by the ledger and the
admin surface, plain dataclasses used as DTOs when writing a new ledger
entry, and ``calculate_totals``: the pure function both the client-facing
price display and the reconciliation endpoint use so their totals always
agree.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, List, Optional, Protocol

TWO_PLACES = Decimal("0.01")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfillment lifecycle of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Payment lifecycle as seen from the order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, Enum):
    """Status of a single Payment row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """The two supported payment networks."""

    CARD_NETWORK = "card-network"
    APPROVAL_NETWORK = "approval-network"

    @property
    def instrument(self) -> str:
        """Instrument recorded on the Payment row (``card`` or ``wallet``)."""
        return "card" if self is PaymentMethod.CARD_NETWORK else "wallet"


# Forward-only moves for a Payment row. Anything else between terminal
# states is a conflict that needs a human.
PAYMENT_TRANSITIONS = {
    PaymentRecordStatus.PENDING: {PaymentRecordStatus.COMPLETED, PaymentRecordStatus.FAILED},
    PaymentRecordStatus.COMPLETED: set(),
    PaymentRecordStatus.FAILED: set(),
}

ORDER_PAYMENT_STATUS_FOR = {
    PaymentRecordStatus.PENDING: PaymentStatus.PENDING,
    PaymentRecordStatus.COMPLETED: PaymentStatus.PAID,
    PaymentRecordStatus.FAILED: PaymentStatus.FAILED,
}

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


# ---- Calculator ----
class PricedLine(Protocol):
    """Anything with a unit ``price`` and a ``quantity``."""

    price: Decimal
    quantity: int


@dataclass(frozen=True)
class Totals:
    """Rounded money totals for a cart.

    Attributes:
        subtotal: Sum of ``price * quantity`` over all lines.
        tax_amount: ``subtotal * rate``.
        total: ``subtotal + tax_amount``.
    """

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {"subtotal": str(self.subtotal), "taxAmount": str(self.tax_amount), "total": str(self.total)}


def money(value) -> Decimal:
    """Round a value to cents using round-half-up."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _rate_fraction(tax_rate_percent) -> Decimal:
    return Decimal(str(tax_rate_percent)) / Decimal("100")


def calculate_totals(items: Iterable[PricedLine], tax_rate_percent) -> Totals:
    """Compute subtotal, tax and grand total for a list of cart lines.

    Pure and deterministic: identical input always yields identical output.
    Each figure is rounded to two decimal places with ROUND_HALF_UP, and the
    total is the sum of the rounded subtotal and the rounded tax, so
    ``total == subtotal + tax_amount`` holds exactly.

    Args:
        items: Lines exposing ``price`` (Decimal, >= 0) and ``quantity``
            (int, >= 1).
        tax_rate_percent: Tax rate as a percentage, e.g. ``10`` for 10%.

    Returns:
        Totals: The rounded subtotal, tax amount and total.

    Raises:
        ValueError: ``NEGATIVE_PRICE`` or ``INVALID_QUANTITY`` on malformed
            lines, ``NEGATIVE_TAX_RATE`` on a negative rate.
    """
    rate = _rate_fraction(tax_rate_percent)
    if rate < 0:
        raise ValueError("NEGATIVE_TAX_RATE")

    raw = Decimal("0")
    for it in items:
        price = Decimal(str(it.price))
        if price < 0:
            raise ValueError("NEGATIVE_PRICE")
        if int(it.quantity) < 1:
            raise ValueError("INVALID_QUANTITY")
        raw += price * int(it.quantity)

    subtotal = money(raw)
    tax_amount = money(subtotal * rate)
    return Totals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)


def line_totals(item: PricedLine, tax_rate_percent) -> tuple[Decimal, Decimal]:
    """Return ``(line_total, line_tax)`` for one cart line, both rounded."""
    line_total = money(Decimal(str(item.price)) * int(item.quantity))
    return line_total, money(line_total * _rate_fraction(tax_rate_percent))


# ---- Ledger write DTOs ----
@dataclass(frozen=True)
class NewOrderItem:
    """Snapshot of a cart line as it will be stored on the order."""

    product_id: Optional[str]
    product_name: str
    quantity: int
    unit_price: Decimal
    tax_amount: Decimal
    total_price: Decimal


@dataclass
class NewOrder:
    """Everything the ledger needs to create an order row.

    Amounts must come from ``calculate_totals``; the ledger re-checks
    ``total_amount == subtotal + tax_amount`` before writing.
    """

    guest_email: str
    billing_address: dict
    shipping_address: dict
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    payment_transaction_id: str
    status: OrderStatus = OrderStatus.CONFIRMED
    payment_status: PaymentStatus = PaymentStatus.PAID
    correlation_id: str = ""
    ip_address: Optional[str] = None
    user_agent: str = ""


@dataclass
class NewPayment:
    """The authoritative payment for a new order."""

    provider: PaymentMethod
    transaction_id: str
    amount: Decimal
    currency: str
    status: PaymentRecordStatus = PaymentRecordStatus.COMPLETED
    gateway_response: dict = field(default_factory=dict)
    correlation_id: str = ""
    ip_address: Optional[str] = None
    user_agent: str = ""


def build_order_items(items: Iterable, tax_rate_percent) -> List[NewOrderItem]:
    """Map validated cart lines to ``NewOrderItem`` snapshots."""
    out = []
    for it in items:
        total, tax = line_totals(it, tax_rate_percent)
        out.append(
            NewOrderItem(
                product_id=(str(it.product_id) if it.product_id is not None else None),
                product_name=it.name,
                quantity=int(it.quantity),
                unit_price=money(it.price),
                tax_amount=tax,
                total_price=total,
            )
        )
    return out
