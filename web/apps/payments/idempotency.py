"""Deduplication of provider webhook deliveries.

Providers deliver events at least once. Each event id is recorded in
``WebhookEvent`` together with a hash of its payload; a redelivery of an
id that is already recorded short-circuits to an acknowledgement. The same
id with a different payload is logged, since providers never change an
event's body.
"""

import hashlib
import json
import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from .models import WebhookEvent

logger = logging.getLogger(__name__)


def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def record_event(event_id: str, provider: str, event_type: str, payload: dict, correlation_id: str = ""):
    """Record a webhook event id, once.

    The create runs in a savepoint so a losing concurrent insert only rolls
    back that block.

    Returns:
        tuple[bool, WebhookEvent]: ``(existing, rec)``; ``existing`` is True
        when the event had already been recorded.
    """
    h = _hash(payload)
    try:
        with transaction.atomic():
            rec = WebhookEvent.objects.create(
                event_id=event_id,
                provider=provider,
                event_type=event_type,
                payload_hash=h,
                correlation_id=correlation_id,
            )
            return False, rec
    except IntegrityError:
        rec = WebhookEvent.objects.get(event_id=event_id)
        if rec.payload_hash != h:
            logger.warning("webhook_event_payload_changed", extra={"event_id": event_id, "event_type": event_type})
        return True, rec


def finalize(rec: WebhookEvent, outcome: str) -> None:
    """Store how an event was handled."""
    rec.outcome = outcome
    rec.processed_at = timezone.now()
    rec.save(update_fields=["outcome", "processed_at"])
