from django.apps import AppConfig, apps
from django.conf import settings
from django.core import checks
from django.db.models.signals import post_save


class PaymentsConfig(AppConfig):
    name = "apps.payments"
    label = "payments"
    verbose_name = "Payment providers and reconciliation"

    def ready(self):
        from .config import ProviderConfigHolder, billing_settings_stamp
        from .models import BillingSettings

        self.provider_config = ProviderConfigHolder(stamp=billing_settings_stamp)
        post_save.connect(_reload_on_billing_change, sender=BillingSettings,
                          dispatch_uid="payments.reload_provider_config")
        checks.register(check_sandbox_disabled_in_production, checks.Tags.security)


def get_provider_config_holder():
    """The process-wide holder owned by the payments app."""
    return apps.get_app_config("payments").provider_config


def _reload_on_billing_change(sender, instance, **kwargs):
    get_provider_config_holder().reload()


def check_sandbox_disabled_in_production(app_configs=None, **kwargs):
    """Refuse sandbox payment doubles outside DEBUG deployments."""
    if getattr(settings, "PAYMENTS_SANDBOX", False) and not settings.DEBUG:
        return [
            checks.Error(
                "PAYMENTS_SANDBOX is enabled while DEBUG is off.",
                hint="Sandbox doubles accept any transaction reference; disable PAYMENTS_SANDBOX in production.",
                id="payments.E001",
            )
        ]
    return []
