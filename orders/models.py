"""
Orders, their lines and shipping address snapshots.

Two independent status axes:
    order_status:   PENDING -> CONFIRMED -> SHIPPED -> FULFILLED, or CANCELLED
    payment_status: PENDING -> PAID -> REFUNDED

Transitions live in orders.services; the models only describe state.
"""
import uuid
from decimal import Decimal

from django.db import models
from django.core.validators import MinValueValidator

from inventory.ledger import StockLine
from inventory.models import Product


class Address(models.Model):
    """
    Shipping address snapshot taken when the order is placed.

    Owned by exactly one order and never edited afterwards.
    """
    line1 = models.CharField(max_length=255)
    line2 = models.CharField(max_length=255, blank=True, default='')
    city = models.CharField(max_length=120)
    phone = models.CharField(max_length=40)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Address'
        verbose_name_plural = 'Addresses'

    def __str__(self):
        return ", ".join(part for part in (self.line1, self.line2, self.city) if part)


class Order(models.Model):
    """
    Customer order.

    stock_committed is True while the order's items are deducted from
    product stock; it guards against deducting or restoring twice.
    """

    class OrderStatus(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        CONFIRMED = 'CONFIRMED', 'Confirmed'
        SHIPPED = 'SHIPPED', 'Shipped'
        FULFILLED = 'FULFILLED', 'Fulfilled'
        CANCELLED = 'CANCELLED', 'Cancelled'

    class PaymentStatus(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PAID = 'PAID', 'Paid'
        REFUNDED = 'REFUNDED', 'Refunded'

    class PaymentMethod(models.TextChoices):
        COD = 'COD', 'Cash on delivery'
        ONLINE = 'ONLINE', 'Online payment'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    buyer_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Identity of the buyer from the auth provider"
    )
    shipping_address = models.OneToOneField(
        Address,
        on_delete=models.PROTECT,
        related_name='order',
        help_text="Shipping address snapshot"
    )
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.ONLINE
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    order_status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0'))],
        help_text="Order total computed from captured item prices"
    )
    stock_committed = models.BooleanField(
        default=False,
        help_text="Whether item quantities are currently deducted from stock"
    )
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['buyer_id', 'created_at']),
            models.Index(fields=['order_status', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.id} ({self.order_status}/{self.payment_status})"

    @property
    def is_cod(self) -> bool:
        return self.payment_method == self.PaymentMethod.COD

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PaymentStatus.PAID

    @property
    def is_cancelled(self) -> bool:
        return self.order_status == self.OrderStatus.CANCELLED

    @property
    def is_buyer_cancellable(self) -> bool:
        return self.order_status in (
            self.OrderStatus.PENDING,
            self.OrderStatus.CONFIRMED,
        )

    @property
    def item_count(self) -> int:
        """Number of lines; uses prefetched items when present."""
        return len(self.items.all())

    def stock_lines(self):
        return [StockLine(item.product_id, item.quantity) for item in self.items.all()]


class OrderItem(models.Model):
    """
    One product line of an order.

    unit_price is the product's final_price when the order was placed;
    later catalog edits never change it.
    """
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='order_lines')
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.UniqueConstraint(fields=['order', 'product'], name='unique_product_per_order'),
        ]

    def __str__(self):
        return f"{self.quantity} x {self.product_id} @ {self.unit_price}"

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity
