"""
Order admin: a read-only window onto orders.

Status and payment changes must go through the API so that stock moves
with them; nothing lifecycle-related is editable here.
"""
from django.contrib import admin
from .models import Address, Order, OrderItem


class OrderLineInline(admin.TabularInline):
    model = OrderItem
    fields = ['product', 'quantity', 'unit_price', 'line_total']
    readonly_fields = fields
    extra = 0
    max_num = 0
    can_delete = False

    @admin.display(description='Line total')
    def line_total(self, obj):
        return obj.subtotal


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'buyer_id', 'order_status', 'payment_status',
        'payment_method', 'total_amount', 'stock_committed', 'created_at'
    ]
    list_filter = ['order_status', 'payment_status', 'payment_method', 'stock_committed']
    search_fields = ['=id', 'buyer_id', 'shipping_address__phone']
    date_hierarchy = 'created_at'
    list_select_related = ['shipping_address']
    inlines = [OrderLineInline]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in Order._meta.concrete_fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Address)
class AddressAdmin(admin.ModelAdmin):
    list_display = ['line1', 'city', 'phone', 'created_at']
    search_fields = ['line1', 'city', 'phone']

    def has_change_permission(self, request, obj=None):
        return False

    def has_add_permission(self, request):
        return False
