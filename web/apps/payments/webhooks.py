"""Card network webhook listener.

Deliveries are authenticated with the provider's signature scheme
(HMAC-SHA256 over ``"{timestamp}.{body}"`` with a timestamp tolerance),
deduplicated by event id, and mapped to forward-only payment status
updates. The listener never creates orders: an event for a transaction the
ledger does not know is logged and acknowledged, and the synchronous
confirmation path stays responsible for creating the order.
"""

import json
import logging
from typing import Optional

import stripe
from django.db import transaction

from apps.orders.domain import PaymentMethod, PaymentRecordStatus
from apps.orders.repository import OrderRepository
from gateway.middleware import CORRELATION_ID_CTX

from .apps import get_provider_config_holder
from .config import ProviderConfigHolder
from .errors import ProviderNotConfigured, ValidationError, WebhookSignatureInvalid
from .idempotency import finalize, record_event

logger = logging.getLogger(__name__)

FAILED_EVENTS = {
    "payment_intent.payment_failed",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}
SUCCEEDED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}
PAID_SESSION_STATUSES = {"paid", "no_payment_required"}

# Outcomes stored on WebhookEvent
UPDATED = "updated"
NOOP = "noop"
ANOMALY = "anomaly"
UNKNOWN_TRANSACTION = "unknown_transaction"
IGNORED = "ignored"
DUPLICATE = "duplicate"


class CardNetworkWebhookListener:
    def __init__(self, repo: Optional[OrderRepository] = None, holder: Optional[ProviderConfigHolder] = None):
        self.repo = repo or OrderRepository()
        self.holder = holder

    def _verify(self, payload: bytes, sig_header: str) -> dict:
        holder = self.holder or get_provider_config_holder()
        with holder.use() as cfg:
            secret, tolerance = cfg.card_webhook_secret, cfg.card_webhook_tolerance
        if not secret:
            raise ProviderNotConfigured(provider=PaymentMethod.CARD_NETWORK.value)

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, sig_header or "", secret, tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("webhook_signature_invalid", extra={"error": str(e)})
            raise WebhookSignatureInvalid() from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationError("INVALID_PAYLOAD") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("INVALID_PAYLOAD")
        return event

    def handle(self, payload: bytes, sig_header: str) -> str:
        """Verify, deduplicate and apply one delivery.

        Args:
            payload: Raw request body, exactly as received.
            sig_header: Value of the ``Stripe-Signature`` header.

        Returns:
            str: What was done with the event (``updated``, ``duplicate``...).

        Raises:
            WebhookSignatureInvalid: Bad, missing or stale signature.
            ValidationError: Signed body that is not an event.
            ProviderNotConfigured: No webhook secret configured.
        """
        event = self._verify(payload, sig_header)
        event_id, event_type = event["id"], event["type"]
        obj = (event.get("data") or {}).get("object") or {}
        correlation_id = str((obj.get("metadata") or {}).get("correlation_id") or "")
        if correlation_id:
            CORRELATION_ID_CTX.set(correlation_id)

        logger.info("webhook_received", extra={"event_id": event_id, "event_type": event_type,
                                               "object_id": obj.get("id")})

        # Recording and applying share one transaction: a failure leaves the
        # event unrecorded so the provider's redelivery is processed.
        with transaction.atomic():
            existing, rec = record_event(event_id, PaymentMethod.CARD_NETWORK.value, event_type, event,
                                         correlation_id=correlation_id)
            if existing:
                logger.info("webhook_duplicate", extra={"event_id": event_id, "event_type": event_type})
                return DUPLICATE
            outcome = self._dispatch(event_id, event_type, obj)
            finalize(rec, outcome)

        logger.info("webhook_processed", extra={"event_id": event_id, "event_type": event_type, "outcome": outcome})
        return outcome

    def _dispatch(self, event_id: str, event_type: str, obj: dict) -> str:
        if event_type in FAILED_EVENTS:
            target = PaymentRecordStatus.FAILED
        elif event_type in SUCCEEDED_EVENTS:
            if event_type.startswith("checkout.session") and obj.get("payment_status") not in PAID_SESSION_STATUSES:
                # Delayed payment methods: the async_* event follows.
                return IGNORED
            target = PaymentRecordStatus.COMPLETED
        else:
            logger.info("webhook_event_ignored", extra={"event_id": event_id, "event_type": event_type})
            return IGNORED

        transaction_id = self._transaction_id(event_type, obj)
        if transaction_id is None:
            logger.info("webhook_unknown_transaction",
                        extra={"event_id": event_id, "event_type": event_type, "object_id": obj.get("id")})
            return UNKNOWN_TRANSACTION

        result = self.repo.update_payment_status(
            transaction_id, target, source="webhook", event_id=event_id,
            detail={"event_type": event_type, "object_id": obj.get("id")},
        )
        if result.payment is None:
            logger.info("webhook_unknown_transaction",
                        extra={"event_id": event_id, "event_type": event_type, "transaction_id": transaction_id})
            return UNKNOWN_TRANSACTION
        if result.anomaly is not None:
            return ANOMALY
        return UPDATED if result.changed else NOOP

    def _transaction_id(self, event_type: str, obj: dict) -> Optional[str]:
        object_id = obj.get("id")
        if not object_id:
            return None
        if not event_type.startswith("payment_intent."):
            return object_id
        # Orders confirmed with the intent id store it directly.
        if self.repo.find_by_transaction_id(object_id) is not None:
            return object_id
        return self.repo.transaction_id_for_intent(object_id)
