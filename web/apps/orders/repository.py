"""Repository layer for the order ledger.

The ledger is the durable Order / OrderItem / Payment store and the single
source of truth for completed transactions. This module keeps the ORM out
of the reconciliation and webhook code: callers pass plain DTOs from
``domain`` and get model instances (or ``None``) back.

Invariants enforced here:

- one Order per ``payment_transaction_id`` (database unique constraint; a
  losing concurrent writer gets ``DuplicateTransaction``),
- Order, its items and its Payment are written in one transaction,
- ``total_amount == subtotal + tax_amount``,
- Payment status only moves forward (pending → completed / failed);
  conflicting updates are recorded as ``PaymentAnomaly`` rows.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from apps.payments.errors import DuplicateTransaction, LedgerWriteFailed

from .domain import (
    ORDER_PAYMENT_STATUS_FOR,
    PAYMENT_TRANSITIONS,
    NewOrder,
    NewOrderItem,
    NewPayment,
    PaymentRecordStatus,
)
from .models import Order, OrderItem, Payment, PaymentAnomaly

logger = logging.getLogger(__name__)

# Attempts at drawing a free order number before giving up.
ORDER_NUMBER_ATTEMPTS = 3


@dataclass
class PaymentStatusUpdate:
    """Outcome of ``update_payment_status``.

    Attributes:
        payment: The payment row, or None if no row matched.
        changed: True when the status was written.
        anomaly: The anomaly row created for a conflicting update, if any.
    """

    payment: Optional[Payment]
    changed: bool
    anomaly: Optional[PaymentAnomaly] = None


class OrderRepository:
    """Persist and query ledger entries using the Django ORM."""

    def create_order_atomic(self, order: NewOrder, items: List[NewOrderItem], payment: NewPayment) -> Order:
        """Create an Order with its items and authoritative Payment.

        All rows are written inside one transaction (a savepoint when the
        caller already holds one), so either everything exists afterwards or
        nothing does.

        Args:
            order: Order header values; amounts from ``calculate_totals``.
            items: At least one item snapshot.
            payment: The payment backing the order; its ``transaction_id``
                must equal ``order.payment_transaction_id``.

        Returns:
            Order: The created order.

        Raises:
            DuplicateTransaction: An order for the same transaction id already
                exists (including a concurrent writer winning the race).
            LedgerWriteFailed: Any other database failure, or DTOs violating
                the ledger invariants.
        """
        if not items:
            raise LedgerWriteFailed(message="order has no items", transaction_id=order.payment_transaction_id)
        if order.total_amount != order.subtotal + order.tax_amount:
            raise LedgerWriteFailed(message="total does not equal subtotal plus tax",
                                    transaction_id=order.payment_transaction_id)
        if payment.transaction_id != order.payment_transaction_id:
            raise LedgerWriteFailed(message="payment does not match order transaction",
                                    transaction_id=order.payment_transaction_id)

        attempt = 0
        while True:
            attempt += 1
            try:
                obj = self._write(order, items, payment)
                break
            except IntegrityError as e:
                # The unique index decides the race.
                if self.find_by_transaction_id(order.payment_transaction_id) is not None:
                    raise DuplicateTransaction(order.payment_transaction_id) from e
                # Another order took the same order number; draw a new one.
                if attempt < ORDER_NUMBER_ATTEMPTS:
                    continue
                raise LedgerWriteFailed(message=str(e), transaction_id=order.payment_transaction_id) from e
            except DatabaseError as e:
                raise LedgerWriteFailed(message=str(e), transaction_id=order.payment_transaction_id) from e

        logger.info(
            "ledger_order_created",
            extra={
                "order_id": str(obj.id),
                "order_number": obj.order_number,
                "transaction_id": obj.payment_transaction_id,
                "total_amount": str(obj.total_amount),
                "currency": obj.currency,
                "attempts": attempt,
            },
        )
        return obj

    def _write(self, order: NewOrder, items: List[NewOrderItem], payment: NewPayment) -> Order:
        with transaction.atomic():
            obj = Order.objects.create(
                guest_email=order.guest_email,
                billing_address=order.billing_address,
                shipping_address=order.shipping_address,
                subtotal=order.subtotal,
                tax_amount=order.tax_amount,
                total_amount=order.total_amount,
                currency=order.currency,
                status=order.status.value,
                payment_status=order.payment_status.value,
                payment_method=order.payment_method.value,
                payment_transaction_id=order.payment_transaction_id,
                items_count=len(items),
                correlation_id=order.correlation_id,
                ip_address=order.ip_address,
                user_agent=order.user_agent,
            )
            OrderItem.objects.bulk_create(
                [
                    OrderItem(
                        order=obj,
                        product_id=it.product_id,
                        product_name=it.product_name,
                        quantity=it.quantity,
                        unit_price=it.unit_price,
                        tax_amount=it.tax_amount,
                        total_price=it.total_price,
                    )
                    for it in items
                ]
            )
            now = timezone.now()
            Payment.objects.create(
                order=obj,
                provider=payment.provider.value,
                payment_method=payment.provider.instrument,
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status.value,
                gateway_response=payment.gateway_response,
                correlation_id=payment.correlation_id,
                ip_address=payment.ip_address,
                user_agent=payment.user_agent,
                processed_at=now if payment.status is PaymentRecordStatus.COMPLETED else None,
                failed_at=now if payment.status is PaymentRecordStatus.FAILED else None,
            )
        return obj

    def find_by_transaction_id(self, ref: str) -> Optional[Order]:
        """Return the order for a provider transaction reference, or None."""
        return Order.objects.filter(payment_transaction_id=ref).first()

    def transaction_id_for_intent(self, intent_id: str) -> Optional[str]:
        """Map a card-network payment intent id to the stored session reference."""
        payment = (
            Payment.objects.filter(gateway_response__payment_intent=intent_id)
            .order_by("created_at")
            .first()
        )
        return payment.transaction_id if payment else None

    def get(self, order_id) -> Optional[Order]:
        return Order.objects.filter(id=order_id).first()

    def authoritative_payment(self, order: Order) -> Optional[Payment]:
        return order.payments.filter(transaction_id=order.payment_transaction_id).order_by("created_at").first()

    def record_anomaly(
        self,
        *,
        transaction_id: str,
        current_status: str,
        attempted_status: str,
        source: str,
        payment: Optional[Payment] = None,
        event_id: str = "",
        detail: Optional[dict] = None,
        correlation_id: str = "",
    ) -> PaymentAnomaly:
        anomaly = PaymentAnomaly.objects.create(
            payment=payment,
            transaction_id=transaction_id,
            current_status=current_status,
            attempted_status=attempted_status,
            source=source,
            event_id=event_id,
            detail=detail or {},
            correlation_id=correlation_id,
        )
        logger.warning(
            "payment_anomaly_recorded",
            extra={
                "anomaly_id": anomaly.id,
                "transaction_id": transaction_id,
                "current_status": current_status,
                "attempted_status": attempted_status,
                "source": source,
                "event_id": event_id,
            },
        )
        return anomaly

    def update_payment_status(
        self,
        transaction_id: str,
        new_status: PaymentRecordStatus,
        *,
        source: str,
        event_id: str = "",
        detail: Optional[dict] = None,
    ) -> PaymentStatusUpdate:
        """Move a payment's status forward, or flag the conflict.

        The row is locked for the duration of the check. Allowed moves are
        pending → completed and pending → failed; the owning order's
        ``payment_status`` follows. Re-applying the current status is a
        no-op. A move between terminal states (completed ↔ failed) is not
        written: a ``PaymentAnomaly`` is recorded instead.

        Args:
            transaction_id: Provider transaction reference.
            new_status: Target status.
            source: Who is asking (``webhook`` or ``reconciliation``).
            event_id: Provider event id, for the anomaly record.
            detail: Extra context stored on the anomaly.

        Returns:
            PaymentStatusUpdate: What happened.
        """
        with transaction.atomic():
            payment = (
                Payment.objects.select_for_update()
                .filter(transaction_id=transaction_id)
                .order_by("created_at")
                .first()
            )
            if payment is None:
                return PaymentStatusUpdate(payment=None, changed=False)

            current = PaymentRecordStatus(payment.status)
            if current is new_status:
                return PaymentStatusUpdate(payment=payment, changed=False)

            if new_status not in PAYMENT_TRANSITIONS[current]:
                anomaly = self.record_anomaly(
                    transaction_id=transaction_id,
                    current_status=current.value,
                    attempted_status=new_status.value,
                    source=source,
                    payment=payment,
                    event_id=event_id,
                    detail=detail,
                    correlation_id=payment.correlation_id,
                )
                return PaymentStatusUpdate(payment=payment, changed=False, anomaly=anomaly)

            now = timezone.now()
            payment.status = new_status.value
            fields = ["status", "updated_at"]
            if new_status is PaymentRecordStatus.COMPLETED:
                payment.processed_at = now
                fields.append("processed_at")
            elif new_status is PaymentRecordStatus.FAILED:
                payment.failed_at = now
                fields.append("failed_at")
            payment.save(update_fields=fields)

            Order.objects.filter(id=payment.order_id, payment_transaction_id=transaction_id).update(
                payment_status=ORDER_PAYMENT_STATUS_FOR[new_status].value, updated_at=now
            )

        logger.info(
            "payment_status_updated",
            extra={
                "transaction_id": transaction_id,
                "from_status": current.value,
                "to_status": new_status.value,
                "source": source,
                "correlation_id": payment.correlation_id or None,
            },
        )
        return PaymentStatusUpdate(payment=payment, changed=True)

    def transition_status(self, order_id, new_status, notes: str = "") -> Order:
        """Apply a fulfillment status change and persist it.

        Raises:
            LookupError: ``ORDER_NOT_FOUND``.
            ValueError: ``INVALID_STATUS_TRANSITION``.
        """
        with transaction.atomic():
            order = Order.objects.select_for_update().filter(id=order_id).first()
            if order is None:
                raise LookupError("ORDER_NOT_FOUND")
            old, new = order.apply_status(new_status, notes)
            order.save()
        logger.info(
            "order_status_changed",
            extra={"order_id": str(order.id), "order_number": order.order_number,
                   "old_status": old.value, "new_status": new.value},
        )
        return order
