from django.urls import path

from . import views

app_name = "webhooks"

urlpatterns = [
    path("payment-webhook", views.payment_webhook, name="payment-webhook"),
    path("orders/<str:order_id>/payment-history", views.payment_history, name="payment-history"),
]
