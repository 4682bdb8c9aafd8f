"""
Order Service Layer - order lifecycle transitions and queries.

Every write transition:
1. Locks the order row with select_for_update() inside transaction.atomic()
2. Checks its guards before touching anything
3. Applies inventory ledger operations and status changes together, so a
   failure anywhere leaves order and stock as they were

Stock is deducted for COD orders at creation and for ONLINE orders when
payment is confirmed. Order.stock_committed records whether the order's
items are currently deducted; it is the only thing consulted before
deducting or restoring.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.db import models, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from core.exceptions import (
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from core.identity import IdentityProvider, get_identity_provider, placeholder_profile
from inventory import ledger
from inventory.ledger import InsufficientStockError, StockLine
from inventory.models import MAX_ID, Product
from .models import Address, Order, OrderItem

logger = logging.getLogger(__name__)

OrderStatus = Order.OrderStatus
PaymentStatus = Order.PaymentStatus
PaymentMethod = Order.PaymentMethod

TOTAL_TOLERANCE = Decimal('0.01')
ADDRESS_FIELDS = ('line1', 'line2', 'city', 'phone')
REQUIRED_ADDRESS_FIELDS = ('line1', 'city', 'phone')


# =============================================================================
# Guards and helpers
# =============================================================================

def parse_order_id(order_id) -> uuid.UUID:
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid order id: {order_id}")


def _require_buyer(buyer_id: Optional[str]) -> None:
    if not buyer_id:
        raise UnauthorizedError("User not authenticated")


def _check_owner(order: Order, buyer_id: str) -> None:
    if order.buyer_id != buyer_id:
        logger.warning(f"User {buyer_id} attempted to access order {order.id}")
        raise ForbiddenError("You are not allowed to access this order")


def _lock_order(order_id) -> Order:
    pk = parse_order_id(order_id)
    try:
        return Order.objects.select_for_update().get(pk=pk)
    except Order.DoesNotExist:
        raise NotFoundError("Order not found")


def _commit_stock(order: Order) -> None:
    if order.stock_committed:
        logger.info(f"Order {order.id}: stock already deducted, skipping")
        return
    ledger.deduct(order.stock_lines())
    order.stock_committed = True


def _release_stock(order: Order) -> None:
    if not order.stock_committed:
        logger.info(f"Order {order.id}: no stock held, nothing to restore")
        return
    ledger.restore(order.stock_lines())
    order.stock_committed = False


def _mark_cancelled(order: Order) -> None:
    _release_stock(order)
    order.order_status = OrderStatus.CANCELLED
    order.cancelled_at = timezone.now()


def _queue_confirmation(order_id) -> None:
    try:
        from .tasks import send_order_confirmation
        send_order_confirmation.delay(str(order_id))
        logger.info(f"Triggered confirmation task for order {order_id}")
    except Exception as e:
        # Don't fail the order if task queuing fails
        logger.error(f"Failed to queue confirmation task: {e}")


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id' and 'quantity'

    Raises:
        ValidationError: If validation fails
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    seen_products = set()
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise ValidationError(f"Item {idx}: missing 'product_id'")
        if 'quantity' not in item:
            raise ValidationError(f"Item {idx}: missing 'quantity'")

        product_id = item['product_id']
        quantity = item['quantity']

        if (isinstance(product_id, bool) or not isinstance(product_id, int)
                or not 1 <= product_id <= MAX_ID):
            raise ValidationError(f"Item {idx}: invalid product_id {product_id}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Item {idx}: quantity must be a positive integer")

        if product_id in seen_products:
            raise ValidationError(f"Item {idx}: duplicate product_id {product_id}")
        seen_products.add(product_id)


def validate_shipping_address(address: Optional[Dict]) -> Dict:
    if not address:
        raise ValidationError("Shipping address is required")

    cleaned = {}
    for field in ADDRESS_FIELDS:
        value = address.get(field) or ''
        cleaned[field] = str(value).strip()

    missing = [field for field in REQUIRED_ADDRESS_FIELDS if not cleaned[field]]
    if missing:
        raise ValidationError(f"Shipping address is missing: {', '.join(missing)}")
    return cleaned


def _check_client_total(total_amount, computed_total: Decimal) -> None:
    """Client totals are advisory; a mismatch means stale prices on the client."""
    if total_amount is None:
        return
    try:
        claimed = Decimal(str(total_amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid total amount: {total_amount}")

    if abs(claimed - computed_total) > TOTAL_TOLERANCE:
        logger.warning(
            f"Price mismatch: client total {claimed}, calculated {computed_total}"
        )
        raise ValidationError(
            f"Order total doesn't match item prices. "
            f"Calculated: {computed_total}, Submitted: {claimed:.2f}"
        )


# =============================================================================
# Transitions
# =============================================================================

def create_order(
    buyer_id: str,
    items: List[Dict],
    shipping_address: Dict,
    payment_method: str,
    total_amount=None,
) -> Order:
    """
    Place an order.

    COD orders are CONFIRMED immediately and their stock is deducted now.
    ONLINE orders stay PENDING and leave stock untouched until payment is
    confirmed.

    Args:
        buyer_id: Identity of the caller
        items: List of dicts with 'product_id' and 'quantity'
        shipping_address: Dict with line1, line2 (optional), city, phone
        payment_method: 'COD' or 'ONLINE'
        total_amount: Optional client-side total, checked against the
            server-computed one

    Returns:
        The created Order

    Raises:
        UnauthorizedError: If there is no buyer identity
        ValidationError: Malformed input, inactive product, price mismatch
        NotFoundError: If a product does not exist
        InsufficientStockError: If any product lacks stock
    """
    _require_buyer(buyer_id)
    validate_order_items(items)
    address_data = validate_shipping_address(shipping_address)
    if payment_method not in PaymentMethod.values:
        raise ValidationError(
            f"Invalid payment method: {payment_method}. "
            f"Expected one of: {', '.join(PaymentMethod.values)}"
        )

    product_ids = [item['product_id'] for item in items]
    lines = [StockLine(item['product_id'], item['quantity']) for item in items]
    is_cod = payment_method == PaymentMethod.COD

    with transaction.atomic():
        products = {
            p.id: p for p in
            Product.objects.select_for_update().filter(id__in=product_ids).order_by('id')
        }

        missing = [str(pid) for pid in product_ids if pid not in products]
        if missing:
            raise NotFoundError(f"Product not found: {', '.join(missing)}")

        inactive = [p.name for p in products.values() if not p.is_active]
        if inactive:
            raise ValidationError(f"Product not available: {', '.join(inactive)}")

        # Check all stock before anything is written
        shortages = ledger.find_shortages(lines, products)
        if shortages:
            logger.warning(f"Order for {buyer_id} rejected: insufficient stock")
            raise InsufficientStockError(shortages)

        computed_total = Decimal('0.00')
        for line in lines:
            computed_total += products[line.product_id].final_price * line.quantity
        _check_client_total(total_amount, computed_total)

        if is_cod:
            ledger.deduct(lines)

        address = Address.objects.create(**address_data)
        order = Order.objects.create(
            buyer_id=buyer_id,
            shipping_address=address,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.CONFIRMED if is_cod else OrderStatus.PENDING,
            total_amount=computed_total,
            stock_committed=is_cod,
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                product=products[line.product_id],
                quantity=line.quantity,
                unit_price=products[line.product_id].final_price,
            )
            for line in lines
        ])

        logger.info(
            f"Order {order.id} created for {buyer_id}: {len(lines)} items, "
            f"total ${computed_total}, {payment_method}, status {order.order_status}"
        )

        if is_cod:
            transaction.on_commit(lambda: _queue_confirmation(order.id))

    return order


def confirm_payment(order_id, buyer_id: str, order_status: Optional[str] = None) -> Order:
    """
    Buyer-reported payment completion.

    Marks the order PAID and, for ONLINE orders paid for the first time,
    deducts stock. Calling it again on a paid order changes nothing.
    Only a PENDING order becomes CONFIRMED. Payment never moves an order
    back, so SHIPPED and FULFILLED orders keep their status.

    Raises:
        ValidationError: Bad id, requested status other than CONFIRMED,
            cancelled order, or insufficient stock at payment time
        ForbiddenError: If the caller is not the buyer
        NotFoundError: If the order does not exist
    """
    _require_buyer(buyer_id)
    if order_status is not None and order_status != OrderStatus.CONFIRMED:
        raise ValidationError(
            f"Invalid order status after payment: {order_status}. Expected CONFIRMED"
        )

    with transaction.atomic():
        order = _lock_order(order_id)
        _check_owner(order, buyer_id)

        if order.is_cancelled:
            raise ValidationError("Cannot confirm payment for a cancelled order")

        if order.is_paid:
            logger.info(f"Order {order.id} already paid, nothing to do")
            return order

        if not order.is_cod:
            _commit_stock(order)

        order.payment_status = PaymentStatus.PAID
        if order.order_status == OrderStatus.PENDING:
            order.order_status = OrderStatus.CONFIRMED
        order.save()

        logger.info(f"Order {order.id} payment confirmed by buyer")
        transaction.on_commit(lambda: _queue_confirmation(order.id))

    return order


def update_order_status(
    order_id,
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> Order:
    """
    Admin (or payment provider) status edit.

    Derived transitions, applied in order:
        a. PAID without an order status confirms a PENDING order
        b. CANCELLED without a payment status refunds an ONLINE order
        c. PAID on an ONLINE order not paid before deducts stock
        d. REFUNDED on an order not yet cancelled cancels it
    Entering CANCELLED restores any stock the order holds.

    Raises:
        ValidationError: Nothing to change, unknown status values, or a
            forbidden move (reopening a cancelled order, cancelling a
            fulfilled one directly, or pairing PAID with a cancelled order
            or a CANCELLED target)
        NotFoundError: If the order does not exist
    """
    if order_status is None and payment_status is None:
        raise ValidationError("Provide an order status and/or a payment status")
    if order_status is not None and order_status not in OrderStatus.values:
        raise ValidationError(
            f"Invalid order status: {order_status}. "
            f"Expected one of: {', '.join(OrderStatus.values)}"
        )
    if payment_status is not None and payment_status not in PaymentStatus.values:
        raise ValidationError(
            f"Invalid payment status: {payment_status}. "
            f"Expected one of: {', '.join(PaymentStatus.values)}"
        )

    with transaction.atomic():
        order = _lock_order(order_id)
        prior_order_status = order.order_status
        prior_payment_status = order.payment_status

        target_order_status = order_status
        target_payment_status = payment_status

        if prior_order_status == OrderStatus.CANCELLED:
            if order_status not in (None, OrderStatus.CANCELLED):
                raise ValidationError("Cannot change the status of a cancelled order")
        if (payment_status == PaymentStatus.PAID
                and OrderStatus.CANCELLED in (prior_order_status, order_status)):
            raise ValidationError("Cannot mark a cancelled order as paid")
        if prior_order_status == OrderStatus.FULFILLED and order_status == OrderStatus.CANCELLED:
            raise ValidationError("Cannot cancel a fulfilled order; refund it instead")

        # a
        if (target_payment_status == PaymentStatus.PAID and order_status is None
                and prior_order_status == OrderStatus.PENDING):
            target_order_status = OrderStatus.CONFIRMED

        # b
        if (target_order_status == OrderStatus.CANCELLED and payment_status is None
                and not order.is_cod):
            target_payment_status = PaymentStatus.REFUNDED

        # c
        if target_payment_status == PaymentStatus.PAID:
            if order.is_cod:
                logger.info(f"Order {order.id}: COD payment received, stock already deducted")
            elif prior_payment_status != PaymentStatus.PAID:
                _commit_stock(order)

        # d
        if (target_payment_status == PaymentStatus.REFUNDED
                and prior_order_status != OrderStatus.CANCELLED):
            target_order_status = OrderStatus.CANCELLED

        if target_order_status == OrderStatus.CANCELLED:
            if prior_order_status != OrderStatus.CANCELLED:
                _mark_cancelled(order)
        elif target_order_status is not None:
            order.order_status = target_order_status

        if target_payment_status is not None:
            order.payment_status = target_payment_status

        order.save()

        logger.info(
            f"Order {order.id} updated: order {prior_order_status} -> {order.order_status}, "
            f"payment {prior_payment_status} -> {order.payment_status}"
        )

        if (order.order_status == OrderStatus.CONFIRMED
                and prior_order_status != OrderStatus.CONFIRMED):
            transaction.on_commit(lambda: _queue_confirmation(order.id))

    return order


def cancel_order(order_id, buyer_id: str) -> Order:
    """
    Buyer cancellation.

    Allowed while the order is PENDING or CONFIRMED. Restores any stock the
    order holds and refunds a paid order.

    Raises:
        ValidationError: Bad id or order already shipped/fulfilled/cancelled
        ForbiddenError: If the caller is not the buyer
        NotFoundError: If the order does not exist
    """
    _require_buyer(buyer_id)

    with transaction.atomic():
        order = _lock_order(order_id)
        _check_owner(order, buyer_id)

        if not order.is_buyer_cancellable:
            raise ValidationError(f"Cannot cancel order in {order.order_status} status")

        _mark_cancelled(order)
        if order.payment_status == PaymentStatus.PAID:
            order.payment_status = PaymentStatus.REFUNDED
        order.save()

        logger.info(f"Order {order.id} cancelled by buyer")

    return order


def cancel_abandoned_orders(older_than: Optional[timedelta] = None) -> int:
    """
    Cancel ONLINE orders whose payment never arrived.

    Args:
        older_than: Age after which a PENDING/PENDING order counts as
            abandoned (default ORDERS_PAYMENT_WINDOW_MINUTES)

    Returns:
        Number of orders cancelled
    """
    if older_than is None:
        older_than = timedelta(minutes=settings.ORDERS_PAYMENT_WINDOW_MINUTES)
    threshold = timezone.now() - older_than

    candidates = list(
        Order.objects.filter(
            payment_method=PaymentMethod.ONLINE,
            order_status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            created_at__lt=threshold,
        ).values_list('pk', flat=True)
    )

    cancelled = 0
    for pk in candidates:
        with transaction.atomic():
            order = _lock_order(pk)
            # Payment may have landed since the candidate query
            if (order.order_status != OrderStatus.PENDING
                    or order.payment_status != PaymentStatus.PENDING):
                continue
            _mark_cancelled(order)
            order.save()
            cancelled += 1
            logger.info(f"Order {order.id} cancelled: payment window expired")

    if cancelled:
        logger.warning(f"Cancelled {cancelled} abandoned online orders")
    return cancelled


# =============================================================================
# Queries
# =============================================================================

def _orders_with_relations():
    return Order.objects.select_related('shipping_address').prefetch_related(
        'items__product'
    )


def list_buyer_orders(buyer_id: str) -> List[Order]:
    _require_buyer(buyer_id)
    return list(_orders_with_relations().filter(buyer_id=buyer_id).order_by('-created_at'))


def get_buyer_order(order_id, buyer_id: str) -> Order:
    """Single order, visible only to its buyer."""
    _require_buyer(buyer_id)
    order = get_order(order_id)
    _check_owner(order, buyer_id)
    return order


def get_order(order_id) -> Order:
    pk = parse_order_id(order_id)
    try:
        return _orders_with_relations().get(pk=pk)
    except Order.DoesNotExist:
        raise NotFoundError("Order not found")


def list_orders(order_status: Optional[str] = None, payment_status: Optional[str] = None) -> List[Order]:
    """All orders, newest first, optionally filtered by status."""
    queryset = _orders_with_relations()
    if order_status:
        if order_status not in OrderStatus.values:
            raise ValidationError(f"Invalid order status filter: {order_status}")
        queryset = queryset.filter(order_status=order_status)
    if payment_status:
        if payment_status not in PaymentStatus.values:
            raise ValidationError(f"Invalid payment status filter: {payment_status}")
        queryset = queryset.filter(payment_status=payment_status)
    return list(queryset.order_by('-created_at'))


def buyer_profiles(orders: Iterable[Order], provider: Optional[IdentityProvider] = None) -> Dict[str, Dict]:
    """
    Buyer profile per distinct buyer_id in orders.

    A provider that raises is logged and replaced by placeholders; reads
    never fail because of profile lookups.
    """
    if provider is None:
        provider = get_identity_provider()

    profiles = {}
    for buyer_id in {order.buyer_id for order in orders}:
        try:
            profiles[buyer_id] = provider.profile(buyer_id)
        except Exception:
            logger.exception(f"Identity provider failed for user {buyer_id}")
            profiles[buyer_id] = placeholder_profile(buyer_id)
    return profiles


def order_statistics(queryset=None) -> Dict:
    """
    Order counts per status and revenue from paid orders.

    Args:
        queryset: Orders to summarize (default: all orders)
    """
    if queryset is None:
        queryset = Order.objects.all()
    stats = queryset.aggregate(
        total_orders=Count('id'),
        pending_orders=Count('id', filter=models.Q(order_status=OrderStatus.PENDING)),
        confirmed_orders=Count('id', filter=models.Q(order_status=OrderStatus.CONFIRMED)),
        shipped_orders=Count('id', filter=models.Q(order_status=OrderStatus.SHIPPED)),
        fulfilled_orders=Count('id', filter=models.Q(order_status=OrderStatus.FULFILLED)),
        cancelled_orders=Count('id', filter=models.Q(order_status=OrderStatus.CANCELLED)),
        paid_orders=Count('id', filter=models.Q(payment_status=PaymentStatus.PAID)),
        total_revenue=Sum('total_amount', filter=models.Q(payment_status=PaymentStatus.PAID)),
    )
    stats['total_revenue'] = str(stats['total_revenue'] or Decimal('0.00'))
    return stats
