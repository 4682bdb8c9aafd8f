"""
Serializers for the catalog.

Prices leave the API as strings with two decimals; final_price is the
discounted price an order would capture right now.
"""
from rest_framework import serializers
from .models import MAX_ID, Category, Product


class CategorySerializer(serializers.ModelSerializer):
    """Category with the number of active products in it."""
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Category
        fields = ['id', 'name', 'product_count', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_product_count(self, obj):
        # Annotated by the category views
        annotated = getattr(obj, 'active_product_count', None)
        if annotated is not None:
            return annotated
        return obj.products.filter(is_active=True).count()

    def validate_name(self, value):
        name = value.strip()
        clash = Category.objects.filter(name__iexact=name)
        if self.instance is not None:
            clash = clash.exclude(pk=self.instance.pk)
        if clash.exists():
            raise serializers.ValidationError(f"Category '{name}' already exists")
        return name


class CategoryRefSerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ['id', 'name']


class ObjectIdRelatedField(serializers.PrimaryKeyRelatedField):
    """Primary key reference that reports ids past the column range as missing."""

    def to_internal_value(self, data):
        try:
            out_of_range = int(data) > MAX_ID
        except OverflowError:
            out_of_range = True
        except (TypeError, ValueError):
            out_of_range = False
        if out_of_range:
            self.fail('does_not_exist', pk_value=data)
        return super().to_internal_value(data)


class ProductSerializer(serializers.ModelSerializer):
    """
    Full product representation for catalog reads and admin writes.

    stock can be set when a product is created. After that it is read-only
    here and moves only through orders and the restock endpoint.
    sales_count is never writable.
    """
    category = CategoryRefSerializer(read_only=True)
    category_id = ObjectIdRelatedField(
        queryset=Category.objects.all(),
        source='category',
        write_only=True
    )
    final_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)
    is_low_stock = serializers.BooleanField(read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'description', 'price', 'discount', 'final_price',
            'image_url', 'category', 'category_id', 'stock', 'sales_count',
            'low_stock_threshold', 'is_low_stock', 'is_out_of_stock',
            'is_active', 'created_at', 'updated_at'
        ]
        read_only_fields = ['sales_count', 'created_at', 'updated_at']

    def get_fields(self):
        fields = super().get_fields()
        if self.instance is not None:
            fields['stock'].read_only = True
        return fields

    def validate_name(self, value):
        return value.strip()


class ProductSummarySerializer(serializers.ModelSerializer):
    """Compact product for order lines and listings embedded elsewhere."""
    final_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)

    class Meta:
        model = Product
        fields = ['id', 'name', 'price', 'final_price', 'image_url']
        read_only_fields = fields


class ProductCardSerializer(ProductSummarySerializer):
    """Search results and featured products: summary plus availability."""
    category = CategoryRefSerializer(read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)

    class Meta(ProductSummarySerializer.Meta):
        fields = ProductSummarySerializer.Meta.fields + [
            'discount', 'category', 'stock', 'sales_count', 'is_out_of_stock'
        ]
        read_only_fields = fields


class RestockSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1, max_value=1_000_000)
