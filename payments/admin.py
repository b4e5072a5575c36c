from django.contrib import admin

from .models import Payment


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "order", "provider", "status", "amount", "currency", "created_at")
    search_fields = ("provider_reference", "capture_reference", "order__order_number")
    list_filter = ("provider", "status", "created_at")
    readonly_fields = ("status", "provider_reference", "capture_reference", "metadata", "completed_at", "created_at", "updated_at")
    ordering = ("-created_at",)
