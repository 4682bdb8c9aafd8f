"""
Catalog routes. Fixed product paths precede products/<pk>/.
"""
from django.urls import path, register_converter
from django.urls.converters import IntConverter
from . import views
from .models import MAX_ID


class ObjectIdConverter(IntConverter):
    """Integer primary key; values past the column range do not match."""

    def to_python(self, value):
        value = int(value)
        if value > MAX_ID:
            raise ValueError(value)
        return value


register_converter(ObjectIdConverter, 'id')

app_name = 'inventory'

urlpatterns = [
    path('categories/', views.CategoryListCreateView.as_view(), name='category-list'),
    path('categories/<id:pk>/', views.CategoryDetailView.as_view(), name='category-detail'),

    path('products/', views.ProductListCreateView.as_view(), name='product-list'),
    path('products/search/', views.ProductSearchView.as_view(), name='product-search'),
    path('products/autocomplete/', views.ProductAutocompleteView.as_view(), name='product-autocomplete'),
    path('products/featured/', views.ProductFeaturedView.as_view(), name='product-featured'),
    path('products/<id:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
    path('products/<id:pk>/restock/', views.ProductRestockView.as_view(), name='product-restock'),
]
