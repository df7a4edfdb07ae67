"""HTTP clients for the two payment networks, with retries and circuit breakers.

This module implements the provider ports using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` and ``X-Correlation-ID``
    from the ContextVars set by the gateway middleware.
- Circuit breaker per network (card, approval) to avoid hammering an
    unhealthy provider, with HALF_OPEN probing after a timeout.
- Retry policy with exponential backoff for transport errors and 5xx.
- Error mapping: timeouts, transport errors, 5xx after retries and an open
    circuit all become ``ProviderUnavailable`` (outcome unknown). Only an
    answer from the provider can become ``ProviderDeclined`` and friends.
- Provider idempotency keys (``Idempotency-Key`` / ``PayPal-Request-Id``) so
    retried creates and captures do not duplicate side effects.

The card network speaks the Stripe REST shapes (form-encoded, amounts in
minor units); the approval network speaks the PayPal Orders v2 shapes
(JSON, OAuth2 client credentials, amounts as decimal strings).
"""

import hashlib
import json
import logging
import threading
import time
from decimal import Decimal
from typing import List, Optional

import httpx
from django.conf import settings

from apps.orders.domain import PaymentMethod, money
from gateway.middleware import CORRELATION_ID_CTX, REQUEST_ID_CTX

from .config import ProviderConfig, ProviderConfigHolder
from .domain import (
    ApprovalNetworkPort,
    CaptureDetails,
    CardNetworkPort,
    CardSessionCreated,
    CardSessionStatus,
    Customer,
    LineItem,
    VerifiedPayment,
    require_customer_identity,
)
from .errors import (
    PaymentNotSucceeded,
    ProviderDeclined,
    ProviderNotConfigured,
    ProviderUnavailable,
    TransactionNotFound,
)

logger = logging.getLogger(__name__)

CARD_PAID_STATUSES = {"paid", "no_payment_required"}
INTENT_SUCCEEDED = "succeeded"
APPROVAL_COMPLETED = "COMPLETED"


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    Thresholds left as None are read from ``HTTP_CIRCUIT_FAIL_THRESHOLD`` and
    ``HTTP_CIRCUIT_RESET_TIMEOUT`` on every check.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: Optional[int] = None, reset_timeout: Optional[float] = None):
        self.name = name
        self._fail_threshold = fail_threshold
        self._reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def fail_threshold(self) -> int:
        if self._fail_threshold is not None:
            return self._fail_threshold
        return int(getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5))

    @property
    def reset_timeout(self) -> float:
        if self._reset_timeout is not None:
            return self._reset_timeout
        return float(getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0))

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            ProviderUnavailable: If the circuit is OPEN or a HALF_OPEN probe
                is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise ProviderUnavailable("CIRCUIT_OPEN", provider=self.name)
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise ProviderUnavailable("CIRCUIT_HALF_OPEN_BUSY", provider=self.name)
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


# Per-network instances; breaker state must outlive a single request.
card_cb = CircuitBreaker("card-network")
approval_cb = CircuitBreaker("approval-network")


# OAuth tokens: (api_base, client_id, generation) -> (token, expires_at)
_token_cache: dict[tuple, tuple[str, float]] = {}
_token_lock = threading.Lock()


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers carrying the request and correlation ids, plus extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    cid = CORRELATION_ID_CTX.get()
    if cid and cid != "-":
        headers["X-Correlation-ID"] = cid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def canonical_hash(payload: dict) -> str:
    """Deterministic SHA-256 of a JSON-serializable payload."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _send(cb: CircuitBreaker, client: httpx.Client, method: str, url: str,
          headers: Optional[dict] = None, **kwargs) -> httpx.Response:
    """Issue one logical provider call with breaker precheck and retries.

    Any response below 500 is returned to the caller for business mapping
    and counts as a breaker success. Transport errors and 5xx are retried
    ``HTTP_RETRY_MAX`` times with exponential backoff, then surface as
    ``ProviderUnavailable``.

    Raises:
        ProviderUnavailable: Circuit open, or retries exhausted.
    """
    max_retries, backoff = _retry_policy()
    tries = 0

    # CIRCUIT: precheck
    state = cb.before_call()
    hdrs = _request_headers(headers)
    hdrs["X-Circuit-State"] = state
    hdrs["X-Retry-Count"] = "0"
    call = getattr(client, method.lower())

    try:
        while True:
            resp = None
            exc = None
            try:
                resp = call(url, headers=hdrs, **kwargs)
                if not _should_retry(resp, None):
                    cb.on_success()
                    return resp
            except httpx.RequestError as e:
                exc = e

            tries += 1
            hdrs["X-Retry-Count"] = str(tries)

            if tries > max_retries:
                cb.on_failure()
                code = "PROVIDER_TIMEOUT" if isinstance(exc, httpx.TimeoutException) else "PROVIDER_UNAVAILABLE"
                logger.warning(
                    "provider_call_exhausted",
                    extra={"provider": cb.name, "url": url, "tries": tries,
                           "status_code": getattr(resp, "status_code", None),
                           "error": repr(exc) if exc else None},
                )
                raise ProviderUnavailable(code, provider=cb.name) from exc

            sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
            cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
            time.sleep(min(sleep_s, cap))
    finally:
        cb.on_finish()


def _json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _minor_units(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value())


# ---------------- Card network ---------------- #

class HttpCardNetworkClient(CardNetworkPort):
    """Card network client: hosted checkout sessions confirmed by lookup."""

    method = PaymentMethod.CARD_NETWORK

    def __init__(self, config: ProviderConfigHolder, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self._transport = transport

    def _client(self, cfg: ProviderConfig) -> httpx.Client:
        if not cfg.card_configured:
            raise ProviderNotConfigured(provider=self.method.value)
        return httpx.Client(
            base_url=cfg.card_api_base,
            timeout=cfg.timeout,
            auth=(cfg.card_secret_key, ""),
            transport=self._transport,
        )

    def create_session(self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
                       customer: Customer, correlation_id: str = "") -> CardSessionCreated:
        """Open a hosted checkout session for a server-computed amount.

        Each cart line becomes a line item and tax is added as its own line,
        so the session total equals ``amount``. Buyer details and the
        correlation id travel as metadata on both the session and its
        payment intent so webhook deliveries can be joined back.

        Returns:
            CardSessionCreated: Session id and the URL to redirect to.

        Raises:
            ProviderUnavailable: Transport failure or 5xx after retries.
            ProviderDeclined: The network rejected the request.
        """
        cur = currency.lower()
        data: dict[str, str] = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "customer_email": customer.email,
            "metadata[correlation_id]": correlation_id,
            "metadata[customer_name]": customer.name,
            "metadata[total]": str(money(amount)),
            "metadata[tax]": str(money(tax_amount)),
            "payment_intent_data[metadata][correlation_id]": correlation_id,
        }
        lines = list(items)
        for i, it in enumerate(lines):
            data[f"line_items[{i}][price_data][currency]"] = cur
            data[f"line_items[{i}][price_data][product_data][name]"] = it.name
            data[f"line_items[{i}][price_data][unit_amount]"] = str(_minor_units(it.unit_price))
            data[f"line_items[{i}][quantity]"] = str(it.quantity)
        if money(tax_amount) > 0:
            i = len(lines)
            data[f"line_items[{i}][price_data][currency]"] = cur
            data[f"line_items[{i}][price_data][product_data][name]"] = "Tax"
            data[f"line_items[{i}][price_data][unit_amount]"] = str(_minor_units(tax_amount))
            data[f"line_items[{i}][quantity]"] = "1"

        with self.config.use() as cfg:
            data["success_url"] = cfg.success_url
            data["cancel_url"] = cfg.cancel_url
            idem = canonical_hash({"correlation_id": correlation_id, "data": data}) if correlation_id else None
            with self._client(cfg) as client:
                resp = _send(card_cb, client, "POST", "/v1/checkout/sessions", data=data,
                             headers={"Idempotency-Key": idem} if idem else None)

        body = _json(resp)
        if resp.status_code != 200 or not body.get("id"):
            logger.warning("card_session_rejected", extra={"status_code": resp.status_code})
            raise ProviderDeclined("SESSION_REJECTED", provider=self.method.value)
        logger.info("card_session_created", extra={"session_id": body["id"], "amount": str(money(amount))})
        return CardSessionCreated(session_id=body["id"], session_url=body.get("url", ""))

    def retrieve_session(self, session_id: str) -> CardSessionStatus:
        """Look up a checkout session (``cs_…``) or payment intent (``pi_…``).

        Raises:
            ProviderUnavailable: Transport failure, 5xx or auth failure.
            TransactionNotFound: The network does not know the id.
        """
        is_intent = session_id.startswith("pi_")
        path = f"/v1/payment_intents/{session_id}" if is_intent else f"/v1/checkout/sessions/{session_id}"
        with self.config.use() as cfg:
            with self._client(cfg) as client:
                resp = _send(card_cb, client, "GET", path)

        if resp.status_code == 404:
            raise TransactionNotFound(provider=self.method.value, transaction_id=session_id)
        if resp.status_code in (401, 403):
            raise ProviderUnavailable("PROVIDER_AUTH_FAILED", provider=self.method.value)
        if resp.status_code != 200:
            raise ProviderDeclined("SESSION_LOOKUP_REJECTED", provider=self.method.value)

        body = _json(resp)
        if is_intent:
            status = body.get("status", "")
            cents = body.get("amount_received") or body.get("amount") or 0
        else:
            status = body.get("payment_status", "")
            cents = body.get("amount_total") or 0
        return CardSessionStatus(
            session_id=session_id,
            status=status,
            amount=Decimal(int(cents)) / 100,
            currency=(body.get("currency") or "").upper(),
            transaction_id=body.get("id") or session_id,
            raw=body,
        )

    def verify(self, ref: str) -> VerifiedPayment:
        st = self.retrieve_session(ref)
        if st.status not in CARD_PAID_STATUSES and st.status != INTENT_SUCCEEDED:
            raise PaymentNotSucceeded(provider=self.method.value, transaction_id=ref, status=st.status)
        return VerifiedPayment(
            method=self.method, transaction_id=st.transaction_id,
            amount=st.amount, currency=st.currency, raw=st.raw,
        )


# ---------------- Approval network ---------------- #

class HttpApprovalNetworkClient(ApprovalNetworkPort):
    """Approval network client: create order, buyer approves, then capture.

    Access tokens are cached per credentials and configuration generation
    until shortly before they expire, so short-lived client instances share
    them.
    """

    method = PaymentMethod.APPROVAL_NETWORK
    TOKEN_SKEW_SECS = 60

    def __init__(self, config: ProviderConfigHolder, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self._transport = transport

    def _client(self, cfg: ProviderConfig) -> httpx.Client:
        if not cfg.approval_configured:
            raise ProviderNotConfigured(provider=self.method.value)
        return httpx.Client(base_url=cfg.approval_api_base, timeout=cfg.timeout, transport=self._transport)

    def _access_token(self, cfg: ProviderConfig, client: httpx.Client) -> str:
        key = (cfg.approval_api_base, cfg.approval_client_id, cfg.generation)
        with _token_lock:
            cached = _token_cache.get(key)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        # Fetched without the lock; concurrent misses may each fetch a token.
        resp = _send(
            approval_cb, client, "POST", "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(cfg.approval_client_id, cfg.approval_client_secret),
        )
        body = _json(resp)
        if resp.status_code != 200 or not body.get("access_token"):
            raise ProviderUnavailable("PROVIDER_AUTH_FAILED", provider=self.method.value)
        ttl = max(0, int(body.get("expires_in", 0)) - self.TOKEN_SKEW_SECS)
        with _token_lock:
            _token_cache[key] = (body["access_token"], time.monotonic() + ttl)
        return body["access_token"]

    def _auth_headers(self, cfg: ProviderConfig, client: httpx.Client, extra: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {self._access_token(cfg, client)}"}
        if extra:
            headers.update(extra)
        return headers

    def create_order(self, amount: Decimal, currency: str, items: List[LineItem], tax_amount: Decimal,
                     customer: Customer, correlation_id: str = "") -> str:
        """Create a provider-side order for buyer approval.

        Raises:
            ValidationError: Missing customer email or name; raised before
                any network call.
            ProviderUnavailable: Transport failure or 5xx after retries.
            ProviderDeclined: The network rejected the order.
        """
        require_customer_identity(customer)

        cur = currency.upper()
        lines = list(items)
        item_total = sum((money(it.unit_price) * it.quantity for it in lines), Decimal("0"))
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "custom_id": correlation_id or None,
                    "amount": {
                        "currency_code": cur,
                        "value": str(money(amount)),
                        "breakdown": {
                            "item_total": {"currency_code": cur, "value": str(money(item_total))},
                            "tax_total": {"currency_code": cur, "value": str(money(tax_amount))},
                        },
                    },
                    "items": [
                        {
                            "name": it.name[:127],
                            "quantity": str(it.quantity),
                            "unit_amount": {"currency_code": cur, "value": str(money(it.unit_price))},
                        }
                        for it in lines
                    ],
                }
            ],
            "payer": {"email_address": customer.email, "name": {"given_name": customer.name[:140]}},
        }
        request_id = canonical_hash({"correlation_id": correlation_id, "payload": payload})

        with self.config.use() as cfg:
            with self._client(cfg) as client:
                headers = self._auth_headers(cfg, client, {"PayPal-Request-Id": request_id})
                resp = _send(approval_cb, client, "POST", "/v2/checkout/orders", json=payload, headers=headers)

        body = _json(resp)
        if resp.status_code not in (200, 201) or not body.get("id"):
            logger.warning("approval_order_rejected", extra={"status_code": resp.status_code})
            raise ProviderDeclined("ORDER_REJECTED", provider=self.method.value)
        logger.info("approval_order_created", extra={"provider_order_id": body["id"], "amount": str(money(amount))})
        return body["id"]

    def _get_order(self, cfg: ProviderConfig, client: httpx.Client, provider_order_id: str) -> httpx.Response:
        return _send(approval_cb, client, "GET", f"/v2/checkout/orders/{provider_order_id}",
                     headers=self._auth_headers(cfg, client))

    def capture_order(self, provider_order_id: str) -> CaptureDetails:
        """Capture an approved order; idempotent.

        The capture request carries a deterministic ``PayPal-Request-Id`` so
        provider-side replays return the original result. If the order was
        already captured, the prior capture is looked up and returned.

        Raises:
            ProviderUnavailable: Transport failure or 5xx after retries.
            TransactionNotFound: Unknown order id.
            PaymentNotSucceeded: Order not approved, or the instrument was
                declined.
        """
        with self.config.use() as cfg:
            with self._client(cfg) as client:
                headers = self._auth_headers(
                    cfg, client, {"PayPal-Request-Id": f"capture-{provider_order_id}", "Prefer": "return=representation"}
                )
                resp = _send(approval_cb, client, "POST", f"/v2/checkout/orders/{provider_order_id}/capture",
                             json={}, headers=headers)

                if resp.status_code == 422 and _issue(resp) == "ORDER_ALREADY_CAPTURED":
                    logger.info("approval_order_already_captured", extra={"provider_order_id": provider_order_id})
                    resp = self._get_order(cfg, client, provider_order_id)

        if resp.status_code == 404:
            raise TransactionNotFound(provider=self.method.value, transaction_id=provider_order_id)
        if resp.status_code == 422:
            raise PaymentNotSucceeded(_issue(resp) or "PAYMENT_NOT_SUCCEEDED",
                                      provider=self.method.value, transaction_id=provider_order_id)
        if resp.status_code in (401, 403):
            raise ProviderUnavailable("PROVIDER_AUTH_FAILED", provider=self.method.value)
        if resp.status_code not in (200, 201):
            raise ProviderDeclined("CAPTURE_REJECTED", provider=self.method.value)
        return _capture_details(provider_order_id, _json(resp))

    def verify(self, ref: str) -> VerifiedPayment:
        details = self.capture_order(ref)
        if details.status != APPROVAL_COMPLETED:
            raise PaymentNotSucceeded(provider=self.method.value, transaction_id=ref, status=details.status)
        return VerifiedPayment(
            method=self.method, transaction_id=details.provider_order_id,
            amount=details.amount, currency=details.currency, raw=details.raw,
        )


def _issue(resp: httpx.Response) -> Optional[str]:
    details = _json(resp).get("details") or []
    if details and isinstance(details[0], dict):
        return details[0].get("issue")
    return None


def _capture_details(provider_order_id: str, body: dict) -> CaptureDetails:
    """Extract the first capture of the first purchase unit."""
    capture: dict = {}
    for unit in body.get("purchase_units") or []:
        captures = ((unit.get("payments") or {}).get("captures")) or []
        if captures:
            capture = captures[0]
            break
    amount = capture.get("amount") or {}
    status = body.get("status", "")
    if capture.get("status") and capture["status"] != APPROVAL_COMPLETED:
        # Order completed but funds still pending/declined at capture level.
        status = capture["status"]
    return CaptureDetails(
        provider_order_id=body.get("id") or provider_order_id,
        capture_id=capture.get("id"),
        status=status,
        amount=Decimal(amount["value"]) if amount.get("value") else None,
        currency=amount.get("currency_code"),
        raw=body,
    )
