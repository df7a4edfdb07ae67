"""Read-only HTTP views over the order ledger.

Orders are only ever created by the payments confirmation endpoint; this
module lists and retrieves them.
"""

from django.core.paginator import Paginator
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .models import Order
from .schemas import OrderReadDTO

MAX_PAGE_SIZE = 100


class OrdersCollectionView(APIView):
    """Paginated order list, newest first."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        try:
            page = max(1, int(request.GET.get("page", 1)))
            page_size = min(MAX_PAGE_SIZE, max(1, int(request.GET.get("page_size", 20))))
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)

        qs = Order.objects.order_by("-created_at")
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)

        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [OrderReadDTO.from_model(o).as_body() for o in page_obj.object_list],
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        o = Order.objects.filter(id=oid).prefetch_related("items").first()
        if o is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_model(o, with_items=True).as_body(), status=200)
