"""Provider configuration: immutable snapshots behind an owned holder.

Provider credentials can change at runtime when an admin saves billing
settings. Rather than re-initialising module-level clients, the payments
``AppConfig`` owns one ``ProviderConfigHolder``. Adapters receive the
holder and lease the current ``ProviderConfig`` snapshot for each call with
``holder.use()``; ``reload()`` swaps in a new snapshot without disturbing
calls already in flight, which keep the snapshot they leased. Leases are
counted per snapshot generation so a retired snapshot's last user is
visible in the logs.

A save in one worker only fires ``post_save`` in that worker. Every other
worker notices the change through ``BillingSettings.updated_at``, which the
holder compares against its snapshot at most once per
``PAYMENTS_CONFIG_TTL_SECS``.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, Optional

from django.conf import settings
from django.db import DatabaseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    """One generation of provider configuration.

    Attributes:
        generation: Monotonic counter, bumped by every ``reload()``.
        currency: Default ISO currency for checkouts.
        tax_rate: Tax percentage applied by ``calculate_totals``.
        card_api_base: Card network REST base URL.
        card_secret_key: Card network API key.
        card_webhook_secret: Secret used to verify card network webhooks.
        card_webhook_tolerance: Max webhook timestamp age, seconds.
        approval_api_base: Approval network REST base URL.
        approval_client_id: Approval network OAuth client id.
        approval_client_secret: Approval network OAuth secret.
        success_url: Redirect target after a paid card session.
        cancel_url: Redirect target after an abandoned card session.
        timeout: Per-request timeout for provider calls, seconds.
        sandbox: Use in-process sandbox doubles instead of HTTP clients.
        source_updated_at: ``BillingSettings.updated_at`` the snapshot was
            built from; None when there is no row.
    """

    generation: int
    currency: str
    tax_rate: Decimal
    card_api_base: str
    card_secret_key: str
    card_webhook_secret: str
    card_webhook_tolerance: int
    approval_api_base: str
    approval_client_id: str
    approval_client_secret: str
    success_url: str
    cancel_url: str
    timeout: float
    sandbox: bool
    source_updated_at: Optional[datetime] = None

    @property
    def card_configured(self) -> bool:
        return bool(self.card_secret_key)

    @property
    def approval_configured(self) -> bool:
        return bool(self.approval_client_id and self.approval_client_secret)


def load_provider_config(generation: int = 0) -> ProviderConfig:
    """Build a snapshot from Django settings overlaid with ``BillingSettings``."""
    from .models import BillingSettings

    row = None
    try:
        row = BillingSettings.current()
    except DatabaseError:
        # Table not migrated yet (first deploy, management commands).
        logger.warning("billing_settings_unavailable")

    def pick(row_value, default):
        return row_value if row_value not in (None, "") else default

    return ProviderConfig(
        generation=generation,
        currency=pick(row and row.currency_code, settings.CHECKOUT_CURRENCY).upper(),
        tax_rate=Decimal(str(pick(row and row.tax_rate, settings.CHECKOUT_TAX_RATE))),
        card_api_base=settings.PAYMENTS_CARD_API_BASE.rstrip("/"),
        card_secret_key=pick(row and row.card_secret_key, settings.PAYMENTS_CARD_SECRET_KEY),
        card_webhook_secret=pick(row and row.card_webhook_secret, settings.PAYMENTS_CARD_WEBHOOK_SECRET),
        card_webhook_tolerance=settings.PAYMENTS_CARD_WEBHOOK_TOLERANCE,
        approval_api_base=settings.PAYMENTS_APPROVAL_API_BASE.rstrip("/"),
        approval_client_id=pick(row and row.approval_client_id, settings.PAYMENTS_APPROVAL_CLIENT_ID),
        approval_client_secret=pick(row and row.approval_client_secret, settings.PAYMENTS_APPROVAL_CLIENT_SECRET),
        success_url=settings.CHECKOUT_SUCCESS_URL,
        cancel_url=settings.CHECKOUT_CANCEL_URL,
        timeout=float(settings.PAYMENTS_HTTP_TIMEOUT_SECS),
        sandbox=bool(settings.PAYMENTS_SANDBOX),
        source_updated_at=row.updated_at if row else None,
    )


def billing_settings_stamp() -> Optional[datetime]:
    """``updated_at`` of the stored ``BillingSettings`` row, or None."""
    from .models import BillingSettings

    try:
        return (
            BillingSettings.objects.filter(setting_key=BillingSettings.KEY)
            .values_list("updated_at", flat=True)
            .first()
        )
    except DatabaseError:
        logger.warning("billing_settings_unavailable")
        return None


class ProviderConfigHolder:
    """Owns the live ``ProviderConfig`` and hands out counted leases.

    The first snapshot is loaded lazily on first use so that constructing
    the holder (at app registry time) never touches the database. When a
    ``stamp`` callable is given, ``current`` compares its value with the
    snapshot's ``source_updated_at`` once per ``ttl`` seconds (default
    ``PAYMENTS_CONFIG_TTL_SECS``) and reloads on a difference.
    """

    def __init__(
        self,
        loader: Callable[[int], ProviderConfig] = load_provider_config,
        stamp: Optional[Callable[[], Optional[datetime]]] = None,
        ttl: Optional[float] = None,
    ):
        self._loader = loader
        self._stamp = stamp
        self._ttl = ttl
        self._lock = threading.RLock()
        self._current: Optional[ProviderConfig] = None
        self._generation = 0
        self._leases: Dict[int, int] = {}
        self._checked_at = 0.0

    def _ttl_secs(self) -> float:
        if self._ttl is not None:
            return self._ttl
        return float(getattr(settings, "PAYMENTS_CONFIG_TTL_SECS", 5.0))

    @property
    def current(self) -> ProviderConfig:
        """The snapshot new calls will see. Does not take a lease."""
        with self._lock:
            if self._current is None:
                self._current = self._loader(self._generation)
                self._checked_at = time.monotonic()
                return self._current
            cfg = self._current
            due = self._stamp is not None and time.monotonic() - self._checked_at >= self._ttl_secs()
            if due:
                self._checked_at = time.monotonic()
        if due:
            # Queried outside the lock; a concurrent reload only bumps the generation again.
            stamp = self._stamp()
            if stamp != cfg.source_updated_at:
                logger.info("provider_config_stale", extra={"generation": cfg.generation})
                return self.reload()
        return cfg

    def reload(self) -> ProviderConfig:
        """Load a fresh snapshot and make it current.

        In-flight leases keep the snapshot they were given.
        """
        with self._lock:
            self._generation += 1
            fresh = self._loader(self._generation)
            previous = self._current
            self._current = fresh
            self._checked_at = time.monotonic()
        logger.info(
            "provider_config_reloaded",
            extra={
                "generation": fresh.generation,
                "previous_generation": previous.generation if previous else None,
                "card_configured": fresh.card_configured,
                "approval_configured": fresh.approval_configured,
                "sandbox": fresh.sandbox,
            },
        )
        return fresh

    def leases(self, generation: int) -> int:
        """Number of open leases on a snapshot generation."""
        with self._lock:
            return self._leases.get(generation, 0)

    @contextmanager
    def use(self) -> Iterator[ProviderConfig]:
        """Lease the current snapshot for the duration of one provider call."""
        cfg = self.current
        with self._lock:
            self._leases[cfg.generation] = self._leases.get(cfg.generation, 0) + 1
        try:
            yield cfg
        finally:
            with self._lock:
                remaining = self._leases[cfg.generation] - 1
                if remaining:
                    self._leases[cfg.generation] = remaining
                else:
                    del self._leases[cfg.generation]
                    if self._current is not None and cfg.generation != self._current.generation:
                        logger.debug("provider_config_retired", extra={"generation": cfg.generation})
