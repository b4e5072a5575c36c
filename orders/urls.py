from django.urls import path

from . import views

app_name = "orders"
urlpatterns = [
    # customer
    path("mine", views.my_orders_view, name="my_orders"),
    path("mine/<int:pk>", views.my_order_detail_view, name="my_order_detail"),

    # staff order management
    path("manage", views.order_list_view, name="manage_list"),
    path("manage/<int:pk>", views.order_detail_view, name="manage_detail"),
    path("manage/<int:pk>/status", views.order_update_status_view, name="manage_update_status"),
    path("manage/<int:pk>/cancel", views.order_cancel_view, name="manage_cancel"),
]
