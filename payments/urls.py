from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("orders", views.create_order_view, name="create_order"),
    path("orders/<str:correlation_id>", views.order_detail_view, name="order_detail"),
    path("orders/<str:correlation_id>/status", views.order_status_view, name="order_status"),
    # gateway redirect/callback target, built by PhonePeClient.callback_url
    path("payments/callback/<str:transaction_id>", views.payment_callback_view, name="payment_callback"),
]
