"""HTTP views for the payments app.

Views are kept small: they validate the body (via Pydantic), delegate to a
service and render the result. Every ``CheckoutError`` is rendered as
``{"detail": CODE}`` with the status the error maps to; provider payloads
never reach the response.

- ``POST create-session/`` opens a hosted card session.
- ``POST create-order/`` opens an approval-network order.
- ``POST confirm/`` verifies a transaction and records the order
  (201 created, 200 when the order already existed).
- ``POST /api/webhooks/card-network/`` receives card network events.
- ``GET orders/by-transaction/<ref>/`` is the success-page lookup.
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders.repository import OrderRepository
from apps.orders.schemas import OrderReadDTO

from .errors import CheckoutError
from .reconciliation import ReconciliationService
from .schemas import ConfirmPaymentDTO, CreatePaymentDTO, parse
from .sessions import CheckoutSessionService
from .webhooks import CardNetworkWebhookListener


def error_response(e: CheckoutError) -> Response:
    return Response(e.as_body(), status=e.http_status)


def client_ip(request):
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.META.get("REMOTE_ADDR") or None


class CreateCardSessionView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_create"

    def post(self, request):
        try:
            dto = parse(CreatePaymentDTO, request.data)
            created = CheckoutSessionService().open_card_session(dto, correlation_id=request.correlation_id)
        except CheckoutError as e:
            return error_response(e)
        return Response({"sessionUrl": created.session_url, "sessionId": created.session_id}, status=200)


class CreateApprovalOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_create"

    def post(self, request):
        try:
            dto = parse(CreatePaymentDTO, request.data)
            provider_order_id = CheckoutSessionService().open_approval_order(dto, correlation_id=request.correlation_id)
        except CheckoutError as e:
            return error_response(e)
        return Response({"providerOrderId": provider_order_id}, status=200)


class ConfirmPaymentView(APIView):
    """Verify an external payment and record it in the ledger.

    Returns:
        - 201 with ``{order, payment}`` when the order was created.
        - 200 with the same body when it already existed.
        - 400 for validation errors.
        - 402 when the provider declined, or does not know the reference.
        - 502 when the provider could not be reached; retry is safe.
        - 500 ``LEDGER_WRITE_FAILED`` when the payment is real but could
          not be recorded.
        - 503 when the selected network is not configured.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_confirm"

    def post(self, request):
        try:
            dto = parse(ConfirmPaymentDTO, request.data)
            result = ReconciliationService().confirm(
                dto,
                correlation_id=request.correlation_id,
                ip_address=client_ip(request),
                user_agent=request.META.get("HTTP_USER_AGENT", ""),
            )
        except CheckoutError as e:
            return error_response(e)

        code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
        resp = Response(result.as_body(), status=code)
        if not result.created:
            resp["Idempotent-Replay"] = "true"
        return resp


class CardNetworkWebhookView(APIView):
    """Signed card network events; always answers ``{received: true}`` once verified."""

    def post(self, request):
        # Raw body first: the signature covers the exact bytes.
        payload = request.body
        try:
            CardNetworkWebhookListener().handle(payload, request.META.get("HTTP_STRIPE_SIGNATURE", ""))
        except CheckoutError as e:
            return error_response(e)
        return Response({"received": True}, status=200)


class OrderByTransactionView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, ref: str):
        order = OrderRepository().find_by_transaction_id(ref)
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_model(order).as_body(), status=200)
