from django.urls import path

from .views import ConfirmPaymentView, CreateApprovalOrderView, CreateCardSessionView, OrderByTransactionView

app_name = "payments"

urlpatterns = [
    path("confirm/", ConfirmPaymentView.as_view(), name="confirm"),
    path("create-session/", CreateCardSessionView.as_view(), name="create-session"),
    path("create-order/", CreateApprovalOrderView.as_view(), name="create-order"),
    path("orders/by-transaction/<str:ref>/", OrderByTransactionView.as_view(), name="order-by-transaction"),
]
