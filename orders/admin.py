from django.contrib import admin

from .models import Order, OrderItem, OrderStatusHistory


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product_id", "product_name", "product_sku", "price", "quantity", "subtotal")
    can_delete = False


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ("from_status", "to_status", "changed_by", "note", "created_at")
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer", "status", "payment_status", "total", "created_at")
    search_fields = ("order_number", "transaction_id", "customer__username", "customer__email")
    list_filter = ("status", "payment_status", "created_at")
    raw_id_fields = ("customer",)
    # status fields change only through the order's transition methods
    readonly_fields = ("status", "payment_status", "transaction_id", "paid_at", "created_at", "updated_at")
    inlines = (OrderItemInline, OrderStatusHistoryInline)
