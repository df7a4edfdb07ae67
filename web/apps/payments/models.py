from django.db import models


class WebhookEvent(models.Model):
    """A provider event that has been received, keyed by the provider's event id.

    Redeliveries of the same event id short-circuit to an acknowledgement.
    """

    event_id = models.CharField(max_length=255, primary_key=True)
    provider = models.CharField(max_length=32)
    event_type = models.CharField(max_length=128)
    # Canonical request hash (sha256 hex)
    payload_hash = models.CharField(max_length=64)
    outcome = models.CharField(max_length=32, blank=True, default="")
    correlation_id = models.CharField(max_length=64, blank=True, default="")
    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "webhook_events"


class BillingSettings(models.Model):
    """Admin-managed provider credentials and pricing knobs.

    A single row keyed ``billing_settings``. Empty values fall back to the
    Django settings defaults. Saving the row reloads the live provider
    configuration.
    """

    KEY = "billing_settings"

    setting_key = models.CharField(max_length=64, unique=True, default=KEY)
    card_secret_key = models.CharField(max_length=255, blank=True, default="")
    card_webhook_secret = models.CharField(max_length=255, blank=True, default="")
    approval_client_id = models.CharField(max_length=255, blank=True, default="")
    approval_client_secret = models.CharField(max_length=255, blank=True, default="")
    currency_code = models.CharField(max_length=3, blank=True, default="")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_settings"

    @classmethod
    def current(cls):
        return cls.objects.filter(setting_key=cls.KEY).first()
