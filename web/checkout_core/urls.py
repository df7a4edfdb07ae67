from django.urls import include, path

urlpatterns = [
    path("api/orders/", include("apps.orders.urls")),
    path("api/payments/", include("apps.payments.urls")),
    path("api/webhooks/", include("apps.payments.webhook_urls")),
]
