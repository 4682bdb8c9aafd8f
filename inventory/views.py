"""
Catalog API Views.

Anyone can browse; only admins create, edit or restock. Products are never
deleted because order lines reference them; deactivate with is_active=false.

Endpoints:
- GET/POST  /categories/                  - List (with active product counts) / create
- GET/PATCH /categories/{pk}/             - Retrieve / rename
- GET/POST  /products/                    - Active products, ?category_id= / create
- GET       /products/search/             - Keyword and filter search
- GET       /products/autocomplete/       - Name prefix lookup (rate limited)
- GET       /products/featured/           - Best sellers by sales_count
- GET/PATCH /products/{pk}/               - Retrieve / edit (stock read-only)
- POST      /products/{pk}/restock/       - Book a delivery
"""
import logging
from decimal import Decimal, InvalidOperation

from django.db.models import Count, Q
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.authentication import IsAdmin, IsAdminOrReadOnly
from core.exceptions import error_response
from core.rate_limiting import rate_limit
from . import ledger
from .models import MAX_ID, Category, Product
from .serializers import (
    CategorySerializer,
    ProductCardSerializer,
    ProductSerializer,
    RestockSerializer,
)

logger = logging.getLogger(__name__)

FEATURED_DEFAULT_LIMIT = 8
FEATURED_MAX_LIMIT = 50


def _decimal_param(value):
    try:
        return Decimal(value)
    except (InvalidOperation, ValueError):
        return None


def _int_param(value):
    if value and value.isdigit() and int(value) <= MAX_ID:
        return int(value)
    return None


def filter_products(queryset, params):
    """
    Apply catalog query parameters to a product queryset.

    Unparseable values are ignored rather than rejected, so a stale link
    still returns a listing.
    """
    keyword = params.get('q', '').strip()
    if keyword:
        queryset = queryset.filter(
            Q(name__icontains=keyword) |
            Q(description__icontains=keyword) |
            Q(category__name__icontains=keyword)
        )

    category_id = _int_param(params.get('category_id'))
    if category_id is not None:
        queryset = queryset.filter(category_id=category_id)

    min_price = _decimal_param(params.get('min_price', ''))
    if min_price is not None:
        queryset = queryset.filter(price__gte=min_price)

    max_price = _decimal_param(params.get('max_price', ''))
    if max_price is not None:
        queryset = queryset.filter(price__lte=max_price)

    if params.get('in_stock', '').lower() == 'true':
        queryset = queryset.filter(stock__gt=0)

    return queryset


def _active_products():
    return Product.objects.active().select_related('category')


class CategoryQuerysetMixin:
    def get_queryset(self):
        return Category.objects.annotate(
            active_product_count=Count('products', filter=Q(products__is_active=True))
        )


class CategoryListCreateView(CategoryQuerysetMixin, generics.ListCreateAPIView):
    serializer_class = CategorySerializer
    permission_classes = [IsAdminOrReadOnly]


class CategoryDetailView(CategoryQuerysetMixin, generics.RetrieveUpdateAPIView):
    serializer_class = CategorySerializer
    permission_classes = [IsAdminOrReadOnly]


class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: Active products, optionally narrowed by ?category_id=
    POST: Create a product (admin); initial stock may be set here
    """
    serializer_class = ProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        queryset = _active_products()
        category_id = _int_param(self.request.query_params.get('category_id'))
        if category_id is not None:
            queryset = queryset.filter(category_id=category_id)
        return queryset

    def perform_create(self, serializer):
        product = serializer.save()
        logger.info(f"Product {product.id} '{product.name}' created with stock {product.stock}")


class ProductDetailView(generics.RetrieveUpdateAPIView):
    """Admins see inactive products too; everyone else only active ones."""
    serializer_class = ProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        user = self.request.user
        if user is not None and getattr(user, 'is_admin', False):
            return Product.objects.select_related('category')
        return _active_products()


class ProductSearchView(generics.ListAPIView):
    """
    GET: Search active products.

    Query Parameters:
        - q: Keyword matched against name, description and category name
        - category_id: Category filter
        - min_price / max_price: List price range
        - in_stock: 'true' to hide sold-out products
    """
    serializer_class = ProductCardSerializer

    def get_queryset(self):
        return filter_products(_active_products(), self.request.query_params).order_by('name')


class ProductFeaturedView(generics.ListAPIView):
    """
    GET: Best-selling active products that can still be ordered.

    Query Parameters:
        - limit: Number of products (default 8, max 50)
    """
    serializer_class = ProductCardSerializer
    pagination_class = None

    def get_queryset(self):
        limit = _int_param(self.request.query_params.get('limit')) or FEATURED_DEFAULT_LIMIT
        limit = min(limit, FEATURED_MAX_LIMIT)
        return Product.objects.orderable().select_related('category').filter(
            sales_count__gt=0
        ).order_by('-sales_count', 'name')[:limit]


class ProductAutocompleteView(APIView):
    """
    GET: Prefix match on product names, top 10.

    Needs at least 3 characters. Rate limited to 20 requests per minute.
    """

    @rate_limit(max_requests=20, window_seconds=60)
    def get(self, request):
        query = request.query_params.get('q', '').strip()
        if len(query) < 3:
            return error_response(
                'Query must be at least 3 characters',
                status.HTTP_400_BAD_REQUEST
            )

        products = Product.objects.active().filter(
            name__istartswith=query
        ).order_by('-sales_count', 'name').values('id', 'name', 'price')[:10]

        return Response(list(products))


class ProductRestockView(APIView):
    """
    POST: Add delivered units to a product's stock (admin).

    Request Body:
        {"quantity": 25}
    """
    permission_classes = [IsAdmin]

    def post(self, request, pk):
        serializer = RestockSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        product = ledger.receive(pk, serializer.validated_data['quantity'])
        product = Product.objects.select_related('category').get(pk=product.pk)
        return Response({
            'success': True,
            'message': f"Stock updated for {product.name}",
            'product': ProductSerializer(product).data,
        })
