"""
Order API Views.

Buyer:
- GET  /orders/                              - List the caller's orders
- POST /orders/                              - Create order
- GET  /orders/{id}/                         - Order detail (own orders only)
- PUT  /orders/{id}/cancel/                  - Cancel order
- PUT  /orders/{id}/payment-complete/        - Confirm payment

Admin:
- GET  /orders/admin/all/                    - All orders with buyer info
- GET  /orders/admin/stats/                  - Order statistics
- GET  /orders/admin/{id}/                   - Any order with buyer info
- PUT  /orders/admin/{id}/status/            - Update order/payment status
- PUT  /orders/admin/{id}/payment/           - Update payment status

Payment provider:
- PUT  /orders/{id}/webhook-update/          - Status update (shared secret)

Every response is an envelope: {"success": ..., "message"?, "order"?,
"orders"?, "count"?}. Errors are rendered by core.exceptions.
"""
import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.authentication import HasWebhookSecret, IsAdmin
from core.rate_limiting import RateLimitMixin
from . import services
from .serializers import (
    OrderSerializer,
    OrderCreateSerializer,
    OrderStatusUpdateSerializer,
    PaymentCompleteSerializer,
)

logger = logging.getLogger(__name__)


def order_payload(order, with_profile=True):
    context = {'profiles': services.buyer_profiles([order])} if with_profile else {}
    return OrderSerializer(order, context=context).data


def orders_payload(orders, with_profile=True):
    context = {'profiles': services.buyer_profiles(orders)} if with_profile else {}
    return OrderSerializer(orders, many=True, context=context).data


class BuyerOrderView(APIView):
    permission_classes = [IsAuthenticated]

    def buyer_id(self):
        return self.request.user.user_id


class OrderListCreateView(RateLimitMixin, BuyerOrderView):
    """
    GET: List the caller's orders, newest first
    POST: Create a new order

    Request Body (POST):
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "shipping_address": {"line1": "1 Main St", "city": "Colombo", "phone": "0771234567"},
        "payment_method": "COD"
    }
    """
    rate_limit_max_requests = 10
    rate_limit_window_seconds = 60

    def get(self, request):
        orders = services.list_buyer_orders(self.buyer_id())
        return Response({
            'success': True,
            'count': len(orders),
            'orders': orders_payload(orders),
        })

    def post(self, request):
        """
        Returns:
            - 201: Order created
            - 400: Validation error or insufficient stock
            - 404: Product not found
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = services.create_order(
            buyer_id=self.buyer_id(),
            items=[dict(item) for item in data['items']],
            shipping_address=dict(data['shipping_address']),
            payment_method=data['payment_method'],
            total_amount=data.get('total_amount'),
        )
        order = services.get_order(order.id)

        return Response({
            'success': True,
            'message': 'Order created successfully',
            'order': order_payload(order, with_profile=False),
        }, status=status.HTTP_201_CREATED)


class OrderDetailView(BuyerOrderView):
    """GET: Order detail, visible only to its buyer."""

    def get(self, request, order_id):
        order = services.get_buyer_order(order_id, self.buyer_id())
        return Response({'success': True, 'order': order_payload(order)})


class OrderCancelView(BuyerOrderView):
    """PUT: Cancel a PENDING or CONFIRMED order."""

    def put(self, request, order_id):
        order = services.cancel_order(order_id, self.buyer_id())
        order = services.get_order(order.id)
        return Response({
            'success': True,
            'message': 'Order cancelled',
            'order': order_payload(order, with_profile=False),
        })


class OrderPaymentCompleteView(BuyerOrderView):
    """PUT: Buyer reports a completed payment."""

    def put(self, request, order_id):
        serializer = PaymentCompleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        requested = serializer.validated_data.get('order_status')

        order = services.confirm_payment(
            order_id,
            self.buyer_id(),
            order_status=requested.strip().upper() if requested else None,
        )
        order = services.get_order(order.id)
        return Response({
            'success': True,
            'message': 'Order payment confirmed',
            'order': order_payload(order, with_profile=False),
        })


class AdminOrderListView(APIView):
    """
    GET: All orders with buyer info.

    Query Parameters:
        - order_status: Filter by order status
        - payment_status: Filter by payment status
    """
    permission_classes = [IsAdmin]

    def get(self, request):
        orders = services.list_orders(
            order_status=request.query_params.get('order_status', '').upper() or None,
            payment_status=request.query_params.get('payment_status', '').upper() or None,
        )
        return Response({
            'success': True,
            'count': len(orders),
            'orders': orders_payload(orders),
        })


class AdminOrderDetailView(APIView):
    """GET: Any order with buyer info."""
    permission_classes = [IsAdmin]

    def get(self, request, order_id):
        order = services.get_order(order_id)
        return Response({'success': True, 'order': order_payload(order)})


class OrderStatusUpdateView(APIView):
    """
    PUT: Update order status and/or payment status.

    Request Body:
        {"status": "SHIPPED"} or {"order_status": "SHIPPED", "payment_status": "PAID"}
    """
    permission_classes = [IsAdmin]
    success_message = 'Order status updated'

    def put(self, request, order_id):
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = services.update_order_status(
            order_id,
            order_status=serializer.validated_data.get('order_status'),
            payment_status=serializer.validated_data.get('payment_status'),
        )
        order = services.get_order(order.id)
        return Response({
            'success': True,
            'message': self.success_message,
            'order': order_payload(order),
        })


class PaymentStatusUpdateView(OrderStatusUpdateView):
    """PUT: Update payment status. Body: {"payment_status": "PAID"}"""
    success_message = 'Payment status updated'


class OrderWebhookUpdateView(OrderStatusUpdateView):
    """
    PUT: Payment-provider callback.

    Authenticated by the shared secret header instead of a user identity.
    """
    authentication_classes = []
    permission_classes = [HasWebhookSecret]
    success_message = 'Order updated'

    def put(self, request, order_id):
        logger.info(f"Webhook update for order {order_id}")
        return super().put(request, order_id)


class OrderStatsView(APIView):
    """GET: Order counts by status and paid revenue."""
    permission_classes = [IsAdmin]

    def get(self, request):
        return Response({'success': True, 'stats': services.order_statistics()})
