"""Error taxonomy for checkout and payment reconciliation.

Every error carries a short, stable ``code`` (rendered as ``{"detail": code}``
by the views), the HTTP status it maps to, and whether the caller may
safely retry. The distinction that matters most to operators is between
``ProviderUnavailable`` (outcome unknown, retry verification) and
``ProviderDeclined`` (outcome known, it failed), and between both of those
and ``LedgerWriteFailed`` (money moved, the record did not).
"""


class CheckoutError(Exception):
    """Base class for all checkout errors."""

    code = "CHECKOUT_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, code: str | None = None, message: str = "", **context):
        self.code = code or self.code
        self.message = message or self.code
        self.context = context
        super().__init__(self.message)

    def as_body(self) -> dict:
        return {"detail": self.code}


class ValidationError(CheckoutError):
    """Caller-correctable input problem, e.g. a missing customer email.

    Attributes:
        field_errors: Mapping of field name to a human-readable message.
    """

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, code: str | None = None, message: str = "", field_errors: dict | None = None, **context):
        super().__init__(code, message, **context)
        self.field_errors = field_errors or {}

    def as_body(self) -> dict:
        body = {"detail": self.code}
        if self.field_errors:
            body["errors"] = self.field_errors
        return body


class ProviderNotConfigured(CheckoutError):
    """The selected payment network has no credentials configured."""

    code = "PROVIDER_NOT_CONFIGURED"
    http_status = 503


class ProviderUnavailable(CheckoutError):
    """Network unreachable, timed out, 5xx or circuit open: outcome unknown."""

    code = "PROVIDER_UNAVAILABLE"
    http_status = 502
    retryable = True


class ProviderDeclined(CheckoutError):
    """The provider answered and the payment did not go through."""

    code = "PAYMENT_DECLINED"
    http_status = 402


class PaymentNotSucceeded(ProviderDeclined):
    """The session/order exists but is not in a successful state."""

    code = "PAYMENT_NOT_SUCCEEDED"


class TransactionNotFound(ProviderDeclined):
    """The provider does not know the supplied transaction reference."""

    code = "TRANSACTION_NOT_FOUND"


class DuplicateTransaction(CheckoutError):
    """An order already exists for this transaction reference.

    Never shown to the buyer: the reconciliation endpoint resolves it to
    the existing order.
    """

    code = "DUPLICATE_TRANSACTION"
    http_status = 409

    def __init__(self, transaction_id: str, **context):
        super().__init__(message=f"order exists for {transaction_id}", **context)
        self.transaction_id = transaction_id


class LedgerWriteFailed(CheckoutError):
    """The external transaction succeeded but the ledger write did not.

    Requires operator attention; the external transaction is the truth.
    """

    code = "LEDGER_WRITE_FAILED"
    http_status = 500


class WebhookSignatureInvalid(CheckoutError):
    """Webhook body failed signature verification."""

    code = "INVALID_SIGNATURE"
    http_status = 400
