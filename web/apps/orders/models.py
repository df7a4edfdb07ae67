import uuid

from django.db import models, transaction
from django.utils import timezone

from .domain import ORDER_TRANSITIONS, OrderStatus


class Order(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter, source of the order number
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=50, unique=True, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        FAILED = "failed"
        REFUNDED = "refunded"

    class PaymentMethod(models.TextChoices):
        CARD_NETWORK = "card-network"
        APPROVAL_NETWORK = "approval-network"

    guest_email = models.EmailField(max_length=255)
    billing_address = models.JSONField()
    shipping_address = models.JSONField()

    subtotal = models.DecimalField(max_digits=10, decimal_places=2)
    tax_amount = models.DecimalField(max_digits=10, decimal_places=2)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="AUD")

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices)
    # One order per external transaction: enforced by the database, not by a lock
    payment_transaction_id = models.CharField(max_length=255, unique=True)

    items_count = models.PositiveIntegerField(default=0)
    correlation_id = models.CharField(max_length=64, blank=True, default="")
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True, default="")
    admin_notes = models.TextField(blank=True, default="")
    cancelled_reason = models.CharField(max_length=500, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def __str__(self):
        return self.order_number

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` and the order number only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    Order.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1
                if not self.order_number:
                    self.order_number = f"ORD-{timezone.now():%Y%m%d}-{self.internal_id:06d}"

        super().save(*args, **kwargs)

    def apply_status(self, new_status, notes: str = ""):
        """Move the fulfillment status and stamp the matching lifecycle field.

        Does not save. Raises ``ValueError("INVALID_STATUS_TRANSITION")`` when
        the move is not allowed from the current status.
        """
        current = OrderStatus(self.status)
        target = OrderStatus(new_status)
        if target not in ORDER_TRANSITIONS[current]:
            raise ValueError("INVALID_STATUS_TRANSITION")

        now = timezone.now()
        self.status = target.value
        if target is OrderStatus.SHIPPED:
            self.shipped_at = now
        elif target is OrderStatus.DELIVERED:
            self.delivered_at = now
        elif target is OrderStatus.CANCELLED:
            self.cancelled_at = now
            if notes:
                self.cancelled_reason = notes[:500]
        elif target is OrderStatus.REFUNDED:
            self.refunded_at = now
        if notes:
            stamp = f"{now.isoformat()}: {notes}"
            self.admin_notes = f"{self.admin_notes}\n{stamp}" if self.admin_notes else stamp
        return current, target


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="items")
    product_id = models.CharField(max_length=64, null=True, blank=True)
    product_name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    tax_amount = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=10, decimal_places=2)

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class Payment(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"

    class Instrument(models.TextChoices):
        CARD = "card"
        WALLET = "wallet"

    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payments")
    provider = models.CharField(max_length=32, choices=Order.PaymentMethod.choices)
    payment_method = models.CharField(max_length=16, choices=Instrument.choices)
    transaction_id = models.CharField(max_length=255, db_index=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="AUD")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    gateway_response = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True, default="")
    correlation_id = models.CharField(max_length=64, blank=True, default="")
    processed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payments"
        ordering = ["-created_at"]


class PaymentAnomaly(models.Model):
    """A status update that conflicted with the ledger, kept for manual review."""

    class Source(models.TextChoices):
        WEBHOOK = "webhook"
        RECONCILIATION = "reconciliation"

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="anomalies", null=True, blank=True)
    transaction_id = models.CharField(max_length=255, db_index=True)
    current_status = models.CharField(max_length=16)
    attempted_status = models.CharField(max_length=16)
    source = models.CharField(max_length=16, choices=Source.choices)
    event_id = models.CharField(max_length=255, blank=True, default="")
    detail = models.JSONField(default=dict, blank=True)
    correlation_id = models.CharField(max_length=64, blank=True, default="")
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "payment_anomalies"
        ordering = ["-created_at"]
