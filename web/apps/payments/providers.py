"""Provider wiring for the payment networks.

Factories return a client for each network bound to the process-wide
``ProviderConfigHolder``. When the current configuration has sandbox mode on,
the in-process doubles from ``adapters`` are returned instead of the HTTP
clients. The choice is made here, at construction time, and never by
inspecting transaction references.
"""

from typing import Optional

from apps.orders.domain import PaymentMethod

from .adapters import SandboxApprovalNetwork, SandboxCardNetwork
from .apps import get_provider_config_holder
from .config import ProviderConfigHolder
from .domain import ApprovalNetworkPort, CardNetworkPort, PaymentProvider, PaymentReference
from .errors import ProviderNotConfigured
from .http_adapters import HttpApprovalNetworkClient, HttpCardNetworkClient


def get_card_network(holder: Optional[ProviderConfigHolder] = None) -> CardNetworkPort:
    """Return the card network client for the current configuration.

    Raises:
        ProviderNotConfigured: No card network credentials and no sandbox.
    """
    holder = holder or get_provider_config_holder()
    cfg = holder.current
    if cfg.sandbox:
        return SandboxCardNetwork(success_url=cfg.success_url, currency=cfg.currency)
    if not cfg.card_configured:
        raise ProviderNotConfigured(provider=PaymentMethod.CARD_NETWORK.value)
    return HttpCardNetworkClient(holder)


def get_approval_network(holder: Optional[ProviderConfigHolder] = None) -> ApprovalNetworkPort:
    """Return the approval network client for the current configuration.

    Raises:
        ProviderNotConfigured: No approval network credentials and no sandbox.
    """
    holder = holder or get_provider_config_holder()
    cfg = holder.current
    if cfg.sandbox:
        return SandboxApprovalNetwork(currency=cfg.currency)
    if not cfg.approval_configured:
        raise ProviderNotConfigured(provider=PaymentMethod.APPROVAL_NETWORK.value)
    return HttpApprovalNetworkClient(holder)


def get_payment_provider(ref: PaymentReference, holder: Optional[ProviderConfigHolder] = None) -> PaymentProvider:
    """Pick the provider that can verify ``ref``."""
    if ref.method is PaymentMethod.CARD_NETWORK:
        return get_card_network(holder)
    return get_approval_network(holder)
