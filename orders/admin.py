from django.contrib import admin
from .models import Order, OrderLine, OrderNote, Product


class OrderLineInline(admin.TabularInline):
    model = OrderLine
    extra = 0


class OrderNoteInline(admin.TabularInline):
    model = OrderNote
    extra = 0
    readonly_fields = ("created_at",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "total", "currency", "payment_method", "billing_email", "created_at", "updated_at")
    search_fields = ("id", "order_key", "billing_email")
    list_filter = ("status", "currency", "payment_method", "created_at")
    readonly_fields = ("order_key", "created_at", "updated_at", "metadata", "stock_reduced")
    inlines = (OrderLineInline, OrderNoteInline)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "name", "price", "manage_stock", "stock_quantity")
    search_fields = ("sku", "name")
