from django.urls import path
from . import views, webhook
app_name = "payments"
urlpatterns = [
    path("checkout/<str:order_id>/", views.checkout_view, name="checkout"),
    path("order-received/<str:order_id>/", views.order_received_view, name="order_received"),
    path("view-order/<str:order_id>/", views.view_order_view, name="view_order"),
    # IPN callback, configured on the gateway side as ipnUrl
    path("ipn", webhook.btcn_ipn, name="btcn_ipn"),
    path("ipn/", webhook.btcn_ipn),
]
