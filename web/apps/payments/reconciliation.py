"""Server-side confirmation of external payments into the order ledger.

``ReconciliationService.confirm`` is the only place that creates orders. It
runs one attempt through ``RECEIVED → VERIFYING → PERSISTED | REJECTED``:

1. If the ledger already holds an order for the reference, return it without
   calling the provider again (duplicate submission).
2. Ask the provider chosen by the reference variant to verify the
   transaction. Any failure rejects the attempt and nothing is written.
3. Recompute totals from the submitted items, never from a client total,
   and write Order, OrderItems and Payment in one transaction. A concurrent
   writer winning the unique constraint resolves to its order.
4. The Payment row records the amount and currency the network reported.
   A payment short of the cart total, or in another currency, leaves the
   order pending with a ``PaymentAnomaly`` for review.

Every state change is logged with the transaction reference and the
correlation id of the checkout attempt.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from apps.orders.domain import (
    NewOrder,
    NewPayment,
    OrderStatus,
    PaymentRecordStatus,
    PaymentStatus,
    build_order_items,
    calculate_totals,
    money,
)
from apps.orders.models import Order, Payment
from apps.orders.repository import OrderRepository

from .apps import get_provider_config_holder
from .config import ProviderConfigHolder
from .domain import PaymentProvider, PaymentReference, reference_for
from .errors import CheckoutError, DuplicateTransaction, LedgerWriteFailed
from .providers import get_payment_provider
from .schemas import ConfirmPaymentDTO

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
VERIFYING = "VERIFYING"
PERSISTED = "PERSISTED"
REJECTED = "REJECTED"


@dataclass
class ConfirmationResult:
    """Outcome of a successful confirmation.

    Attributes:
        order: The ledger order for the transaction.
        payment: Its authoritative payment.
        created: False when the order already existed.
    """

    order: Order
    payment: Optional[Payment]
    created: bool

    def as_body(self) -> dict:
        return {
            "order": {
                "id": str(self.order.id),
                "orderNumber": self.order.order_number,
                "total": str(self.order.total_amount),
                "currency": self.order.currency,
                "status": self.order.status,
                "paymentStatus": self.order.payment_status,
            },
            "payment": {
                "transactionId": self.order.payment_transaction_id,
                "method": self.order.payment_method,
            },
        }


class ReconciliationService:
    def __init__(
        self,
        repo: Optional[OrderRepository] = None,
        provider_for: Callable[..., PaymentProvider] = get_payment_provider,
        holder: Optional[ProviderConfigHolder] = None,
    ):
        self.repo = repo or OrderRepository()
        self.provider_for = provider_for
        self.holder = holder

    def _log_state(self, state: str, ref: PaymentReference, correlation_id: str, level=logging.INFO, **extra):
        logger.log(
            level,
            "reconciliation_state",
            extra={"state": state, "transaction_id": ref.ref, "payment_method": ref.method.value,
                   "correlation_id": correlation_id or None, **extra},
        )

    def _existing(self, order: Order) -> ConfirmationResult:
        return ConfirmationResult(order=order, payment=self.repo.authoritative_payment(order), created=False)

    def confirm(
        self,
        dto: ConfirmPaymentDTO,
        *,
        correlation_id: str = "",
        ip_address: Optional[str] = None,
        user_agent: str = "",
    ) -> ConfirmationResult:
        """Verify an external transaction and record it in the ledger.

        Args:
            dto: Validated confirmation request.
            correlation_id: Id of the checkout attempt, stored on the rows.
            ip_address: Buyer address for the audit trail.
            user_agent: Buyer user agent for the audit trail.

        Returns:
            ConfirmationResult: The order, with ``created`` False for a replay.

        Raises:
            ProviderUnavailable: Verification outcome unknown; safe to retry.
            ProviderDeclined: Payment declined, not succeeded or not found.
            ProviderNotConfigured: The selected network has no credentials.
            LedgerWriteFailed: The payment is real but the ledger write failed.
        """
        ref = reference_for(dto.payment_method, dto.provider_transaction_ref)
        self._log_state(RECEIVED, ref, correlation_id, items=len(dto.items))

        existing = self.repo.find_by_transaction_id(ref.ref)
        if existing is not None:
            self._log_state(PERSISTED, ref, correlation_id, order_id=str(existing.id), duplicate=True)
            return self._existing(existing)

        self._log_state(VERIFYING, ref, correlation_id)
        try:
            verified = self.provider_for(ref, self.holder).verify(ref.ref)
        except CheckoutError as e:
            self._log_state(REJECTED, ref, correlation_id, level=logging.WARNING,
                            error=e.code, retryable=e.retryable)
            raise

        holder = self.holder or get_provider_config_holder()
        with holder.use() as cfg:
            tax_rate, configured_currency = cfg.tax_rate, cfg.currency

        totals = calculate_totals(dto.items, tax_rate)
        items = build_order_items(dto.items, tax_rate)
        # The Payment row mirrors what the network charged; the cart total is
        # only a fallback for networks that report no amount.
        charged = money(verified.amount) if verified.amount is not None else totals.total
        currency = verified.currency.upper() if verified.currency else configured_currency
        held = charged < totals.total or currency != configured_currency
        snapshot = dto.customer_info.snapshot()
        order = NewOrder(
            guest_email=str(dto.customer_info.email),
            billing_address=snapshot,
            shipping_address=dict(snapshot),
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total_amount=totals.total,
            currency=currency,
            payment_method=ref.method,
            payment_transaction_id=ref.ref,
            status=OrderStatus.PENDING if held else OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PENDING if held else PaymentStatus.PAID,
            correlation_id=correlation_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        payment = NewPayment(
            provider=ref.method,
            transaction_id=ref.ref,
            amount=charged,
            currency=currency,
            status=PaymentRecordStatus.COMPLETED,
            gateway_response=verified.raw,
            correlation_id=correlation_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        try:
            created = self.repo.create_order_atomic(order, items, payment)
        except DuplicateTransaction:
            winner = self.repo.find_by_transaction_id(ref.ref)
            self._log_state(PERSISTED, ref, correlation_id, order_id=str(winner.id), duplicate=True)
            return self._existing(winner)
        except LedgerWriteFailed as e:
            logger.critical(
                "ledger_write_failed",
                extra={"transaction_id": ref.ref, "payment_method": ref.method.value,
                       "amount": str(charged), "currency": currency,
                       "correlation_id": correlation_id or None, "error": e.message},
            )
            raise

        result = ConfirmationResult(order=created, payment=self.repo.authoritative_payment(created), created=True)
        self._check_amount(result, charged, currency, totals.total, configured_currency, held, correlation_id)
        self._log_state(PERSISTED, ref, correlation_id, order_id=str(created.id),
                        order_number=created.order_number, total=str(created.total_amount), held=held)
        return result

    def _check_amount(self, result: ConfirmationResult, charged, currency: str, total, configured_currency: str,
                      held: bool, correlation_id: str) -> None:
        """Flag a charged amount or currency that disagrees with the cart."""
        amount_differs = charged != total
        currency_differs = currency != configured_currency
        if not (amount_differs or currency_differs):
            return
        self.repo.record_anomaly(
            transaction_id=result.order.payment_transaction_id,
            current_status=PaymentRecordStatus.COMPLETED.value,
            attempted_status=PaymentRecordStatus.COMPLETED.value,
            source="reconciliation",
            payment=result.payment,
            detail={
                "reason": "CURRENCY_MISMATCH" if currency_differs else "AMOUNT_MISMATCH",
                "verified_amount": str(charged),
                "verified_currency": currency,
                "ledger_total": str(total),
                "ledger_currency": configured_currency,
                "held_for_review": held,
            },
            correlation_id=correlation_id,
        )
