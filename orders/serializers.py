"""
Request and response shapes for the order API.

Request serializers only check structure; business rules (stock, product
availability, status moves) are enforced in orders.services.
"""
from rest_framework import serializers
from .models import Address, Order, OrderItem
from inventory.models import MAX_ID
from inventory.serializers import ProductSummarySerializer


class AddressSerializer(serializers.ModelSerializer):
    """Shipping address snapshot; line2 is optional."""

    class Meta:
        model = Address
        fields = ['line1', 'line2', 'city', 'phone']
        extra_kwargs = {'line2': {'required': False, 'allow_blank': True}}


class OrderLineSerializer(serializers.ModelSerializer):
    product = ProductSummarySerializer(read_only=True)
    subtotal = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'quantity', 'unit_price', 'subtotal']
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """
    Full order with lines and address.

    Pass context={'profiles': {buyer_id: profile}} to embed the buyer
    profile as 'user'; without it the key is left out.
    """
    items = OrderLineSerializer(many=True, read_only=True)
    item_count = serializers.IntegerField(read_only=True)
    shipping_address = AddressSerializer(read_only=True)
    user = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'buyer_id', 'user', 'order_status', 'payment_status',
            'payment_method', 'total_amount', 'items', 'item_count',
            'shipping_address', 'cancelled_at', 'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_user(self, obj):
        return self.context['profiles'].get(obj.buyer_id)

    def get_fields(self):
        fields = super().get_fields()
        if 'profiles' not in self.context:
            fields.pop('user')
        return fields


class LineRequestSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1, max_value=MAX_ID)
    quantity = serializers.IntegerField(min_value=1)


class OrderCreateSerializer(serializers.Serializer):
    """
    Body of POST /orders/

        {
            "items": [{"product_id": 1, "quantity": 2}],
            "shipping_address": {"line1": "...", "city": "...", "phone": "..."},
            "payment_method": "COD",
            "total_amount": "42.00"
        }

    total_amount is optional and only cross-checked against the computed
    total.
    """
    items = LineRequestSerializer(many=True, allow_empty=False)
    shipping_address = AddressSerializer()
    payment_method = serializers.ChoiceField(choices=Order.PaymentMethod.choices)
    total_amount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=0,
        required=False,
        allow_null=True
    )

    def validate_items(self, lines):
        seen = set()
        for line in lines:
            if line['product_id'] in seen:
                raise serializers.ValidationError(
                    f"Product {line['product_id']} appears more than once"
                )
            seen.add(line['product_id'])
        return lines


class PaymentCompleteSerializer(serializers.Serializer):
    """Body of PUT /orders/{id}/payment-complete/; order_status is optional."""
    order_status = serializers.CharField(required=False, allow_null=True)


class OrderStatusUpdateSerializer(serializers.Serializer):
    """
    Body of the admin and webhook status endpoints.

    'status' is accepted as an alias of 'order_status'. Enum values are
    checked by the service so every entry point reports them the same way.
    """
    order_status = serializers.CharField(required=False, allow_null=True)
    status = serializers.CharField(required=False, allow_null=True, write_only=True)
    payment_status = serializers.CharField(required=False, allow_null=True)

    def validate(self, attrs):
        alias = attrs.pop('status', None)
        if attrs.get('order_status') is None and alias is not None:
            attrs['order_status'] = alias
        for key in ('order_status', 'payment_status'):
            if attrs.get(key) is not None:
                attrs[key] = attrs[key].strip().upper()
        if attrs.get('order_status') is None and attrs.get('payment_status') is None:
            raise serializers.ValidationError(
                "Provide an order status and/or a payment status"
            )
        return attrs
