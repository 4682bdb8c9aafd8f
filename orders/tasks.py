"""
Celery tasks for the order lifecycle.

    - send_order_confirmation: queued on commit when an order becomes CONFIRMED
    - expire_abandoned_orders: beat, cancels ONLINE orders never paid
    - generate_daily_order_report: beat, logs yesterday's figures
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

logger = logging.getLogger(__name__)


def _confirmation_text(order) -> str:
    address = order.shipping_address
    lines = [
        f"Order {order.id} confirmed",
        f"Buyer: {order.buyer_id}",
        f"Ship to: {address.line1}, {address.city} ({address.phone})",
        f"Payment: {order.get_payment_method_display()}, {order.payment_status}",
    ]
    for item in order.items.all():
        lines.append(f"  {item.quantity} x {item.product.name} @ {item.unit_price} = {item.subtotal}")
    lines.append(f"Total: {order.total_amount}")
    return "\n".join(lines)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def send_order_confirmation(self, order_id: str):
    """
    Notify the buyer and fulfilment that an order is confirmed.

    Delivery is a log line for now; the return value says what happened.

    Returns:
        {'status': 'success' | 'skipped' | 'error', ...}
    """
    from orders.models import Order

    order = Order.objects.select_related('shipping_address').prefetch_related(
        'items__product'
    ).filter(pk=order_id).first()
    if order is None:
        logger.error(f"Confirmation for unknown order {order_id}")
        return {'status': 'error', 'order_id': order_id, 'message': 'Order not found'}

    # The order may have been cancelled between queueing and running
    if order.order_status != Order.OrderStatus.CONFIRMED:
        logger.warning(f"Order {order_id} is {order.order_status}, confirmation skipped")
        return {'status': 'skipped', 'order_id': order_id, 'order_status': order.order_status}

    logger.info(_confirmation_text(order))
    return {'status': 'success', 'order_id': str(order.id)}


@shared_task
def expire_abandoned_orders():
    """Cancel ONLINE orders left unpaid past ORDERS_PAYMENT_WINDOW_MINUTES."""
    from orders.services import cancel_abandoned_orders

    return {'cancelled': cancel_abandoned_orders()}


@shared_task
def generate_daily_order_report():
    """Log counts and paid revenue for orders placed yesterday."""
    from orders.models import Order
    from orders.services import order_statistics

    day = timezone.localdate() - timedelta(days=1)
    stats = order_statistics(Order.objects.filter(created_at__date=day))

    logger.info(
        f"Daily order report {day}: {stats['total_orders']} orders, "
        f"{stats['confirmed_orders']} confirmed, {stats['cancelled_orders']} cancelled, "
        f"{stats['paid_orders']} paid, revenue {stats['total_revenue']}"
    )
    stats['date'] = day.isoformat()
    return stats
