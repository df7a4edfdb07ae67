"""Client-side checkout controller.

Drives one checkout attempt against the payments API over HTTP. It picks
the form for the selected network, validates buyer details before any call,
and turns every API answer into one of three outcomes:

- ``success``: the order summary, a redirect URL or a provider order id,
- ``validation_error``: a field → message map to show inline,
- ``provider_error``: a generic retry prompt. Provider payloads and error
  codes are never shown to the buyer.

All calls of an attempt carry the same ``X-Correlation-ID`` so the server
logs, the ledger rows and the provider metadata can be joined.

For the approval network, the provider order is created only when the
buyer clicks approve in the embedded widget (``approval_create_order`` is
the widget's create callback); creating it earlier would leave unapproved
orders behind on the provider.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import httpx
from pydantic import validate_email

logger = logging.getLogger(__name__)

CARD_NETWORK = "card-network"
APPROVAL_NETWORK = "approval-network"

SUCCESS = "success"
VALIDATION_ERROR = "validation_error"
PROVIDER_ERROR = "provider_error"

GENERIC_PROVIDER_MESSAGE = "We couldn't complete your payment. Please try again."


@dataclass(frozen=True)
class FormField:
    name: str
    required: bool = False


ADDRESS_FIELDS = [FormField("address"), FormField("city"), FormField("state"), FormField("postcode"),
                  FormField("country")]
IDENTITY_FIELDS = [FormField("email", required=True), FormField("name", required=True)]

# The approval widget collects shipping details itself.
FORMS = {
    CARD_NETWORK: IDENTITY_FIELDS + ADDRESS_FIELDS,
    APPROVAL_NETWORK: list(IDENTITY_FIELDS),
}


@dataclass
class CheckoutOutcome:
    """What the checkout page should do next.

    Attributes:
        kind: ``success``, ``validation_error`` or ``provider_error``.
        order: Order summary on a successful confirmation.
        redirect_url: Hosted card session to send the buyer to.
        provider_order_id: Approval-network order id for the widget.
        field_errors: Inline messages keyed by form field.
        message: Text for the buyer on a provider error.
        retryable: Whether retrying the same step may succeed.
    """

    kind: str
    order: Optional[dict] = None
    redirect_url: Optional[str] = None
    provider_order_id: Optional[str] = None
    field_errors: dict = field(default_factory=dict)
    message: str = ""
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.kind == SUCCESS


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class CheckoutController:
    """One buyer's checkout against the payments API.

    Args:
        base_url: API root, e.g. ``https://shop.example/api``.
        client: Optional preconfigured ``httpx.Client`` (tests inject one
            built on ``httpx.MockTransport``).
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, base_url: str = "", client: Optional[httpx.Client] = None, timeout: float = 15.0):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.correlation_id = str(uuid.uuid4())

    def new_attempt(self) -> str:
        """Start a new checkout attempt with a fresh correlation id."""
        self.correlation_id = str(uuid.uuid4())
        return self.correlation_id

    def form_fields(self, method: str) -> List[FormField]:
        """Fields the buyer form shows for ``method``."""
        try:
            return list(FORMS[method])
        except KeyError:
            raise ValueError(f"unknown payment method: {method}") from None

    def validate_customer(self, customer: dict, method: str = CARD_NETWORK) -> dict:
        """Return a field → message map; empty when the details are usable."""
        errors = {}
        for f in self.form_fields(method):
            if f.required and not str(customer.get(f.name) or "").strip():
                errors[f.name] = f"{f.name.capitalize()} is required"
        email = str(customer.get("email") or "").strip()
        if email and "email" not in errors:
            try:
                validate_email(email)
            except ValueError:
                errors["email"] = "Enter a valid email address"
        return errors

    # ---- API calls ----
    def _post(self, path: str, body: dict) -> CheckoutOutcome | httpx.Response:
        try:
            resp = self.client.post(path, json=_jsonable(body), headers={"X-Correlation-ID": self.correlation_id})
        except httpx.RequestError as e:
            logger.warning("checkout_api_unreachable",
                           extra={"path": path, "correlation_id": self.correlation_id, "error": repr(e)})
            return CheckoutOutcome(kind=PROVIDER_ERROR, message=GENERIC_PROVIDER_MESSAGE, retryable=True)
        if resp.is_success:
            return resp
        return self._failure(path, resp)

    def _failure(self, path: str, resp: httpx.Response) -> CheckoutOutcome:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code == 400:
            return CheckoutOutcome(kind=VALIDATION_ERROR, field_errors=self._field_errors(body))
        logger.warning(
            "checkout_step_failed",
            extra={"path": path, "status_code": resp.status_code, "detail": body.get("detail"),
                   "correlation_id": self.correlation_id},
        )
        return CheckoutOutcome(kind=PROVIDER_ERROR, message=GENERIC_PROVIDER_MESSAGE,
                               retryable=resp.status_code in (429, 502, 503))

    @staticmethod
    def _field_errors(body: dict) -> dict:
        errors = {}
        for key, msg in (body.get("errors") or {}).items():
            # "customerInfo.email" -> "email"
            errors[key.split(".")[-1] if key.startswith("customerInfo.") else key] = msg
        if not errors:
            errors["form"] = "Please check your details and try again."
        return errors

    def _checked(self, customer: dict, method: str) -> Optional[CheckoutOutcome]:
        errors = self.validate_customer(customer, method)
        if errors:
            return CheckoutOutcome(kind=VALIDATION_ERROR, field_errors=errors)
        return None

    def start_card_checkout(self, items: List[dict], customer: dict) -> CheckoutOutcome:
        """Open a hosted card session; success carries ``redirect_url``."""
        invalid = self._checked(customer, CARD_NETWORK)
        if invalid:
            return invalid
        out = self._post("/payments/create-session/", {"items": items, "customerInfo": customer})
        if isinstance(out, CheckoutOutcome):
            return out
        return CheckoutOutcome(kind=SUCCESS, redirect_url=out.json().get("sessionUrl"))

    def complete_card_checkout(self, session_id: str, items: List[dict], customer: dict) -> CheckoutOutcome:
        """Confirm a card session after the buyer returns from the hosted page."""
        return self._confirm(CARD_NETWORK, session_id, items, customer)

    def approval_create_order(self, items: List[dict], customer: dict) -> CheckoutOutcome:
        """Widget create callback: runs when the buyer clicks approve."""
        invalid = self._checked(customer, APPROVAL_NETWORK)
        if invalid:
            return invalid
        out = self._post("/payments/create-order/", {"items": items, "customerInfo": customer})
        if isinstance(out, CheckoutOutcome):
            return out
        return CheckoutOutcome(kind=SUCCESS, provider_order_id=out.json().get("providerOrderId"))

    def approval_approved(self, provider_order_id: str, items: List[dict], customer: dict) -> CheckoutOutcome:
        """Widget approve callback: capture and record the order server-side."""
        return self._confirm(APPROVAL_NETWORK, provider_order_id, items, customer)

    def _confirm(self, method: str, ref: str, items: List[dict], customer: dict) -> CheckoutOutcome:
        invalid = self._checked(customer, method)
        if invalid:
            return invalid
        out = self._post(
            "/payments/confirm/",
            {"paymentMethod": method, "providerTransactionRef": ref, "items": items, "customerInfo": customer},
        )
        if isinstance(out, CheckoutOutcome):
            return out
        return CheckoutOutcome(kind=SUCCESS, order=out.json().get("order"))
