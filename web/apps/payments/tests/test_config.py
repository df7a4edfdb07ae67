from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from apps.payments import providers
from apps.payments.adapters import SandboxApprovalNetwork, SandboxCardNetwork
from apps.payments.apps import check_sandbox_disabled_in_production
from apps.payments.config import ProviderConfigHolder, billing_settings_stamp
from apps.payments.errors import ProviderNotConfigured
from apps.payments.http_adapters import HttpApprovalNetworkClient, HttpCardNetworkClient
from apps.payments.models import BillingSettings


def test_lease_keeps_snapshot_across_reload(make_holder):
    holder = make_holder()
    with holder.use() as cfg:
        assert holder.leases(cfg.generation) == 1
        fresh = holder.reload()
        assert fresh.generation == cfg.generation + 1
        # the in-flight call still sees the snapshot it leased
        assert cfg.card_secret_key == "sk_test_123"
        assert holder.current is fresh
    assert holder.leases(cfg.generation) == 0


def test_nested_leases_are_counted(make_holder):
    holder = make_holder()
    with holder.use() as a, holder.use() as b:
        assert a is b
        assert holder.leases(a.generation) == 2
    assert holder.leases(a.generation) == 0


@pytest.mark.django_db
def test_saving_billing_settings_reloads(provider_config, settings):
    settings.PAYMENTS_SANDBOX = False
    before = provider_config.current
    assert before.card_configured is False

    BillingSettings.objects.create(card_secret_key="sk_live_1", currency_code="nzd", tax_rate=Decimal("15"))

    after = provider_config.current
    assert after.generation > before.generation
    assert after.card_secret_key == "sk_live_1"
    assert after.currency == "NZD"
    assert after.tax_rate == Decimal("15")


@pytest.mark.django_db
def test_empty_billing_values_fall_back_to_settings(provider_config, settings):
    settings.CHECKOUT_CURRENCY = "AUD"
    BillingSettings.objects.create()
    assert provider_config.current.currency == "AUD"
    assert provider_config.current.tax_rate == Decimal(str(settings.CHECKOUT_TAX_RATE))


@pytest.mark.django_db
def test_factories_return_sandbox_doubles():
    assert isinstance(providers.get_card_network(), SandboxCardNetwork)
    assert isinstance(providers.get_approval_network(), SandboxApprovalNetwork)


def test_factories_return_http_clients(make_holder):
    holder = make_holder()
    assert isinstance(providers.get_card_network(holder), HttpCardNetworkClient)
    assert isinstance(providers.get_approval_network(holder), HttpApprovalNetworkClient)


def test_factories_raise_when_unconfigured(make_holder):
    holder = make_holder(card_secret_key="", approval_client_id="")
    with pytest.raises(ProviderNotConfigured) as exc:
        providers.get_card_network(holder)
    assert exc.value.http_status == 503
    with pytest.raises(ProviderNotConfigured):
        providers.get_approval_network(holder)


def test_sandbox_check_fails_without_debug(settings):
    settings.DEBUG = False
    settings.PAYMENTS_SANDBOX = True
    errors = check_sandbox_disabled_in_production()
    assert [e.id for e in errors] == ["payments.E001"]


def test_sandbox_check_passes_in_debug_or_when_off(settings):
    settings.DEBUG = True
    assert check_sandbox_disabled_in_production() == []
    settings.DEBUG = False
    settings.PAYMENTS_SANDBOX = False
    assert check_sandbox_disabled_in_production() == []


@pytest.mark.django_db
def test_change_saved_by_another_worker_is_picked_up(settings):
    settings.PAYMENTS_CONFIG_TTL_SECS = 0
    BillingSettings.objects.create(tax_rate=Decimal("10"))
    # A holder that never sees post_save, as in a second gunicorn worker.
    other_worker = ProviderConfigHolder(stamp=billing_settings_stamp)
    assert other_worker.current.tax_rate == Decimal("10")

    BillingSettings.objects.filter(setting_key=BillingSettings.KEY).update(
        tax_rate=Decimal("15"), updated_at=timezone.now() + timedelta(seconds=1)
    )

    with other_worker.use() as cfg:
        assert cfg.tax_rate == Decimal("15")
        assert cfg.generation == 1


@pytest.mark.django_db
def test_staleness_is_checked_at_most_once_per_ttl():
    checks = []

    def stamp():
        checks.append(1)
        return None

    holder = ProviderConfigHolder(stamp=stamp, ttl=3600)
    for _ in range(5):
        holder.current
    assert checks == []
    assert holder.current.generation == 0
