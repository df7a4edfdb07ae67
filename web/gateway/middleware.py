"""Middleware that assigns request and checkout correlation identifiers.

Two identifiers travel with every request:

- ``request_id``: one per HTTP request, read from ``X-Request-Id`` or
  generated (UUIDv4). Echoed back in ``X-Request-ID``.
- ``correlation_id``: one per checkout attempt. The checkout controller
  generates it once and sends it as ``X-Correlation-ID`` on every call of
  the attempt (create session/order, confirm). It is stored on the ledger
  rows and in provider metadata so webhook deliveries can be joined to the
  synchronous path. When absent, the request id is used.

Both are stored on the ``request`` object and in context variables so code
running downstream (provider clients, log filters) can read them without
passing them explicitly.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
CORRELATION_ID_CTX = contextvars.ContextVar("correlation_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Set a per-request identifier and return it on the response.

    Attributes:
        HEADER (str): Incoming header name in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        return response


class CorrelationIdMiddleware(MiddlewareMixin):
    """Bind the checkout-attempt correlation id for the request.

    Must run after ``RequestIdMiddleware``, whose id is the fallback.
    Webhook views overwrite the context value once they have read the
    correlation id out of the verified provider event.
    """

    HEADER = "HTTP_X_CORRELATION_ID"
    RESPONSE_HEADER = "X-Correlation-ID"
    MAX_LENGTH = 64

    def process_request(self, request):
        cid = (request.META.get(self.HEADER) or "").strip()[: self.MAX_LENGTH]
        if not cid:
            cid = getattr(request, "request_id", None) or str(uuid.uuid4())
        request.correlation_id = cid
        CORRELATION_ID_CTX.set(cid)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = getattr(request, "correlation_id", CORRELATION_ID_CTX.get())
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject API bodies larger than ``API_MAX_BYTES`` before parsing."""

    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
