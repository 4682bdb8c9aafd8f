"""
Django Admin for the catalog.

Stock is editable only on the add form; afterwards it moves through orders
and the restock endpoint so the sales counters stay consistent.
"""
from django.contrib import admin
from django.db.models import Count, F
from .models import Category, Product


class StockLevelFilter(admin.SimpleListFilter):
    title = 'stock level'
    parameter_name = 'stock_level'

    def lookups(self, request, model_admin):
        return [
            ('out', 'Out of stock'),
            ('low', 'Low stock'),
            ('ok', 'In stock'),
        ]

    def queryset(self, request, queryset):
        if self.value() == 'out':
            return queryset.filter(stock=0)
        if self.value() == 'low':
            return queryset.low_stock().filter(stock__gt=0)
        if self.value() == 'ok':
            return queryset.filter(stock__gt=F('low_stock_threshold'))
        return queryset


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['name', 'total_products', 'updated_at']
    search_fields = ['name']

    def get_queryset(self, request):
        return super().get_queryset(request).annotate(total_products=Count('products'))

    @admin.display(description='Products', ordering='total_products')
    def total_products(self, obj):
        return obj.total_products


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = [
        'name', 'category', 'price', 'discount', 'final_price',
        'stock', 'sales_count', 'low_stock', 'is_active'
    ]
    list_filter = [StockLevelFilter, 'is_active', 'category']
    list_select_related = ['category']
    search_fields = ['name', 'description', 'category__name']
    autocomplete_fields = ['category']
    actions = ['deactivate']

    def get_readonly_fields(self, request, obj=None):
        readonly = ['sales_count', 'created_at', 'updated_at']
        if obj is not None:
            readonly.append('stock')
        return readonly

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.display(boolean=True, description='Low')
    def low_stock(self, obj):
        return obj.is_low_stock

    @admin.action(description='Deactivate selected products')
    def deactivate(self, request, queryset):
        updated = queryset.update(is_active=False)
        self.message_user(request, f"{updated} products deactivated")
