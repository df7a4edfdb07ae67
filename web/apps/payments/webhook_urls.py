from django.urls import path

from .views import CardNetworkWebhookView

app_name = "webhooks"

urlpatterns = [
    path("card-network/", CardNetworkWebhookView.as_view(), name="card-network"),
]
