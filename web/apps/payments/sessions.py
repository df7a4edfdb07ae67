"""Opening payments on the two networks before the buyer pays.

Nothing is persisted here. The amount sent to a provider is recomputed from
the submitted cart; a client-supplied amount that disagrees is only logged.
A currency other than the configured one is rejected.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from apps.orders.domain import Totals, calculate_totals

from .apps import get_provider_config_holder
from .config import ProviderConfigHolder
from .domain import CardSessionCreated
from .errors import ValidationError
from .providers import get_approval_network, get_card_network
from .schemas import CreatePaymentDTO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedCart:
    totals: Totals
    currency: str


class CheckoutSessionService:
    def __init__(self, holder: Optional[ProviderConfigHolder] = None):
        self.holder = holder

    def _price(self, dto: CreatePaymentDTO, correlation_id: str) -> PricedCart:
        holder = self.holder or get_provider_config_holder()
        with holder.use() as cfg:
            tax_rate, currency = cfg.tax_rate, cfg.currency
        totals = calculate_totals(dto.items, tax_rate)
        if dto.amount is not None and dto.amount != totals.total:
            logger.warning(
                "client_amount_ignored",
                extra={"client_amount": str(dto.amount), "server_total": str(totals.total),
                       "correlation_id": correlation_id or None},
            )
        if dto.currency and dto.currency != currency:
            # Ledger totals are priced in the configured currency only.
            raise ValidationError("UNSUPPORTED_CURRENCY", field_errors={"currency": f"Only {currency} is accepted"})
        return PricedCart(totals=totals, currency=currency)

    def open_card_session(self, dto: CreatePaymentDTO, correlation_id: str = "") -> CardSessionCreated:
        """Open a hosted card session for the server-computed total."""
        priced = self._price(dto, correlation_id)
        network = get_card_network(self.holder)
        return network.create_session(
            priced.totals.total, priced.currency, [it.as_line_item() for it in dto.items],
            priced.totals.tax_amount, dto.customer_info.as_customer(), correlation_id,
        )

    def open_approval_order(self, dto: CreatePaymentDTO, correlation_id: str = "") -> str:
        """Create an approval-network order; returns the provider order id."""
        priced = self._price(dto, correlation_id)
        network = get_approval_network(self.holder)
        return network.create_order(
            priced.totals.total, priced.currency, [it.as_line_item() for it in dto.items],
            priced.totals.tax_amount, dto.customer_info.as_customer(), correlation_id,
        )
