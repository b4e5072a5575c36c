from django.urls import path

from . import views, webhook

app_name = "payments"
urlpatterns = [
    path("orders/<int:order_id>/", views.create_payment_view, name="create_payment"),
    path("<int:payment_id>/confirm", views.confirm_payment_view, name="confirm_payment"),

    # provider webhooks
    path("webhooks/stripe", webhook.stripe_webhook, name="stripe_webhook"),
    path("webhooks/paypal", webhook.paypal_webhook, name="paypal_webhook"),
]
