"""
Tests for the order lifecycle.

Test Cases:
1. COD orders deduct stock at creation, ONLINE orders at payment
2. Insufficient stock rejects creation with no side effects
3. Payment confirmation deducts exactly once
4. Cancellation restores held stock exactly once
5. Admin status edits and their derived transitions
6. Ownership checks on reads and writes
7. API envelopes and status codes
8. Background tasks
"""
import random
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from core.exceptions import (
    DomainError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from core.identity import IdentityProvider
from inventory.ledger import InsufficientStockError
from inventory.models import Category, Product
from orders import services
from orders.models import Address, Order, OrderItem
from orders.tasks import (
    expire_abandoned_orders,
    generate_daily_order_report,
    send_order_confirmation,
)

BUYER = 'user_buyer'
OTHER_BUYER = 'user_other'
ADDRESS = {'line1': '12 Galle Road', 'line2': 'Apt 4', 'city': 'Colombo', 'phone': '0771234567'}


class StaticIdentityProvider(IdentityProvider):
    def profile(self, user_id):
        return {'id': user_id, 'full_name': f"Name of {user_id}", 'unavailable': False}


class BrokenIdentityProvider(IdentityProvider):
    def profile(self, user_id):
        raise RuntimeError('identity service down')


class OrderTestMixin:
    """Shared catalog fixtures: P has 5 units, Q is discounted 25%."""

    def setUp(self):
        self.category = Category.objects.create(name='Test Category')
        self.product = Product.objects.create(
            category=self.category,
            name='Product P',
            price=Decimal('10.00'),
            stock=5
        )
        self.discounted = Product.objects.create(
            category=self.category,
            name='Product Q',
            price=Decimal('40.00'),
            discount=Decimal('25'),
            stock=20
        )

    def place(self, payment_method='COD', quantity=3, buyer=BUYER, product=None, **kwargs):
        product = product or self.product
        return services.create_order(
            buyer_id=buyer,
            items=[{'product_id': product.id, 'quantity': quantity}],
            shipping_address=ADDRESS,
            payment_method=payment_method,
            **kwargs
        )

    def assertStock(self, product, stock, sales_count=None):
        product.refresh_from_db()
        self.assertEqual(product.stock, stock)
        if sales_count is not None:
            self.assertEqual(product.sales_count, sales_count)


class OrderCreationTestCase(OrderTestMixin, TestCase):
    """Order creation for both payment methods."""

    def test_cod_order_deducts_stock_immediately(self):
        """
        Given: P has 5 units
        When: Placing a COD order for 3
        Then: Order is CONFIRMED, payment PENDING, P has 2 left
        """
        order = self.place('COD', 3)

        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(order.stock_committed)
        self.assertEqual(order.total_amount, Decimal('30.00'))
        self.assertEqual(order.items.count(), 1)
        self.assertStock(self.product, 2, sales_count=3)

    def test_online_order_leaves_stock_untouched(self):
        order = self.place('ONLINE', 3)

        self.assertEqual(order.order_status, Order.OrderStatus.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertFalse(order.stock_committed)
        self.assertStock(self.product, 5, sales_count=0)

    def test_insufficient_stock_rejects_order(self):
        for method in ('COD', 'ONLINE'):
            with self.subTest(method=method):
                with self.assertRaises(ValidationError) as context:
                    self.place(method, 10)

                self.assertIsInstance(context.exception, InsufficientStockError)
                self.assertIn('Available: 5, Requested: 10', str(context.exception))
                self.assertIn('Product P', str(context.exception))

        self.assertStock(self.product, 5, sales_count=0)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(Address.objects.count(), 0)

    def test_no_partial_deduction_on_multi_item_shortage(self):
        with self.assertRaises(InsufficientStockError):
            services.create_order(
                buyer_id=BUYER,
                items=[
                    {'product_id': self.discounted.id, 'quantity': 2},
                    {'product_id': self.product.id, 'quantity': 6},
                ],
                shipping_address=ADDRESS,
                payment_method='COD'
            )

        self.assertStock(self.discounted, 20)
        self.assertStock(self.product, 5)

    def test_discounted_price_is_captured(self):
        order = self.place('ONLINE', 2, product=self.discounted)

        item = order.items.get()
        self.assertEqual(item.unit_price, Decimal('30.00'))
        self.assertEqual(item.subtotal, Decimal('60.00'))
        self.assertEqual(order.total_amount, Decimal('60.00'))

    def test_total_is_computed_from_items(self):
        order = services.create_order(
            buyer_id=BUYER,
            items=[
                {'product_id': self.product.id, 'quantity': 2},
                {'product_id': self.discounted.id, 'quantity': 1},
            ],
            shipping_address=ADDRESS,
            payment_method='ONLINE',
            total_amount=Decimal('50.00')
        )

        self.assertEqual(order.total_amount, Decimal('50.00'))

    def test_client_total_mismatch_rejected(self):
        with self.assertRaises(ValidationError) as context:
            self.place('COD', 3, total_amount=Decimal('1.00'))

        self.assertIn("doesn't match", str(context.exception))
        self.assertStock(self.product, 5)
        self.assertEqual(Order.objects.count(), 0)

    def test_shipping_address_snapshot(self):
        order = self.place('COD', 1)

        address = order.shipping_address
        self.assertEqual(address.line1, '12 Galle Road')
        self.assertEqual(address.city, 'Colombo')
        self.assertEqual(address.phone, '0771234567')

    def test_unknown_product_not_found(self):
        with self.assertRaises(NotFoundError) as context:
            services.create_order(
                buyer_id=BUYER,
                items=[{'product_id': 999999, 'quantity': 1}],
                shipping_address=ADDRESS,
                payment_method='COD'
            )

        self.assertIn('999999', str(context.exception))

    def test_inactive_product_rejected(self):
        self.product.is_active = False
        self.product.save()

        with self.assertRaises(ValidationError):
            self.place('COD', 1)
        self.assertStock(self.product, 5)

    def test_missing_buyer_unauthorized(self):
        with self.assertRaises(UnauthorizedError):
            self.place('COD', 1, buyer='')

    def test_input_validation(self):
        cases = {
            'empty items': dict(items=[]),
            'zero quantity': dict(items=[{'product_id': self.product.id, 'quantity': 0}]),
            'missing product_id': dict(items=[{'quantity': 1}]),
            'oversized product_id': dict(items=[{'product_id': 10**20, 'quantity': 1}]),
            'text product_id': dict(items=[{'product_id': '7', 'quantity': 1}]),
            'duplicate products': dict(items=[
                {'product_id': self.product.id, 'quantity': 1},
                {'product_id': self.product.id, 'quantity': 2},
            ]),
            'bad payment method': dict(payment_method='BARTER'),
            'address without city': dict(shipping_address={'line1': 'x', 'phone': '1'}),
            'no address': dict(shipping_address=None),
        }
        for label, overrides in cases.items():
            with self.subTest(label):
                kwargs = {
                    'buyer_id': BUYER,
                    'items': [{'product_id': self.product.id, 'quantity': 1}],
                    'shipping_address': ADDRESS,
                    'payment_method': 'COD',
                }
                kwargs.update(overrides)
                with self.assertRaises(ValidationError):
                    services.create_order(**kwargs)

        self.assertStock(self.product, 5)

    def test_cod_order_queues_confirmation(self):
        with patch('orders.tasks.send_order_confirmation.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                order = self.place('COD', 1)

        delay.assert_called_once_with(str(order.id))

    def test_online_order_does_not_queue_confirmation(self):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.place('ONLINE', 1)

        self.assertEqual(callbacks, [])


class PaymentConfirmationTestCase(OrderTestMixin, TestCase):
    """Buyer-side payment confirmation."""

    def test_online_payment_deducts_stock(self):
        """
        Given: ONLINE order for 2 units, P has 5
        When: Buyer confirms payment
        Then: P has 3, sales_count 2, order PAID and CONFIRMED
        """
        order = self.place('ONLINE', 2)
        self.assertStock(self.product, 5)

        order = services.confirm_payment(order.id, BUYER)

        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertTrue(order.stock_committed)
        self.assertStock(self.product, 3, sales_count=2)

    def test_repeated_confirmation_deducts_once(self):
        order = self.place('ONLINE', 2)

        services.confirm_payment(order.id, BUYER)
        services.confirm_payment(order.id, BUYER)
        services.confirm_payment(str(order.id), BUYER, order_status='CONFIRMED')

        self.assertStock(self.product, 3, sales_count=2)

    def test_cod_payment_does_not_touch_stock(self):
        order = self.place('COD', 3)

        order = services.confirm_payment(order.id, BUYER)

        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertStock(self.product, 2, sales_count=3)

    def test_payment_keeps_shipped_status(self):
        order = self.place('ONLINE', 2)
        services.update_order_status(order.id, order_status='SHIPPED')

        order = services.confirm_payment(order.id, BUYER)

        self.assertEqual(order.order_status, Order.OrderStatus.SHIPPED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertStock(self.product, 3, sales_count=2)

    def test_other_buyer_cannot_confirm(self):
        order = self.place('ONLINE', 2)

        with self.assertRaises(UnauthorizedError) as context:
            services.confirm_payment(order.id, OTHER_BUYER)

        self.assertIsInstance(context.exception, ForbiddenError)
        self.assertStock(self.product, 5)

    def test_target_status_must_be_confirmed(self):
        order = self.place('ONLINE', 2)

        with self.assertRaises(ValidationError):
            services.confirm_payment(order.id, BUYER, order_status='SHIPPED')

        order.refresh_from_db()
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)

    def test_cancelled_order_cannot_be_paid(self):
        order = self.place('ONLINE', 2)
        services.cancel_order(order.id, BUYER)

        with self.assertRaises(ValidationError):
            services.confirm_payment(order.id, BUYER)
        self.assertStock(self.product, 5)

    def test_payment_fails_when_stock_ran_out(self):
        """
        Given: ONLINE order for 4 placed while P had 5
        When: A COD order takes 3 first, then the ONLINE order is paid
        Then: Payment is refused and the ONLINE order is unchanged
        """
        online = self.place('ONLINE', 4)
        self.place('COD', 3, buyer=OTHER_BUYER)

        with self.assertRaises(InsufficientStockError) as context:
            services.confirm_payment(online.id, BUYER)

        self.assertIn('Available: 2, Requested: 4', str(context.exception))
        online.refresh_from_db()
        self.assertEqual(online.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(online.order_status, Order.OrderStatus.PENDING)
        self.assertFalse(online.stock_committed)
        self.assertStock(self.product, 2)

    def test_unknown_and_malformed_ids(self):
        with self.assertRaises(NotFoundError):
            services.confirm_payment(uuid.uuid4(), BUYER)
        with self.assertRaises(ValidationError):
            services.confirm_payment('not-a-uuid', BUYER)


class BuyerCancelTestCase(OrderTestMixin, TestCase):
    """Buyer cancellation and stock restoration."""

    def test_cod_cancel_restores_stock(self):
        """
        Scenario: P stock 5, COD order for 3 -> stock 2, CONFIRMED.
        Buyer cancels -> stock 5, CANCELLED.
        """
        order = self.place('COD', 3)
        self.assertStock(self.product, 2)

        order = services.cancel_order(order.id, BUYER)

        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertIsNotNone(order.cancelled_at)
        self.assertFalse(order.stock_committed)
        self.assertStock(self.product, 5, sales_count=0)

    def test_pending_cod_cancel_restores_stock(self):
        order = self.place('COD', 3)
        Order.objects.filter(pk=order.pk).update(order_status=Order.OrderStatus.PENDING)

        services.cancel_order(order.id, BUYER)

        self.assertStock(self.product, 5)

    def test_unpaid_online_cancel_does_not_inflate_stock(self):
        order = self.place('ONLINE', 3)

        order = services.cancel_order(order.id, BUYER)

        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertStock(self.product, 5, sales_count=0)

    def test_paid_online_cancel_refunds_and_restores(self):
        order = self.place('ONLINE', 2)
        services.confirm_payment(order.id, BUYER)
        self.assertStock(self.product, 3)

        order = services.cancel_order(order.id, BUYER)

        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertStock(self.product, 5, sales_count=0)

    def test_cancel_rejected_in_late_states(self):
        for state in ('SHIPPED', 'FULFILLED', 'CANCELLED'):
            with self.subTest(state=state):
                order = self.place('COD', 1)
                Order.objects.filter(pk=order.pk).update(order_status=state)
                stock_before = Product.objects.get(pk=self.product.pk).stock

                with self.assertRaises(ValidationError) as context:
                    services.cancel_order(order.id, BUYER)

                self.assertIn(state, str(context.exception))
                self.assertStock(self.product, stock_before)

    def test_cancel_twice_restores_once(self):
        order = self.place('COD', 3)
        services.cancel_order(order.id, BUYER)

        with self.assertRaises(ValidationError):
            services.cancel_order(order.id, BUYER)
        self.assertStock(self.product, 5)

    def test_other_buyer_cannot_cancel(self):
        order = self.place('COD', 3)

        with self.assertRaises(UnauthorizedError):
            services.cancel_order(order.id, OTHER_BUYER)

        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertStock(self.product, 2)


class AdminStatusUpdateTestCase(OrderTestMixin, TestCase):
    """Admin and webhook status edits with derived transitions."""

    def test_paid_confirms_pending_online_order_and_deducts_once(self):
        order = self.place('ONLINE', 2)

        order = services.update_order_status(order.id, payment_status='PAID')

        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertStock(self.product, 3, sales_count=2)

        services.update_order_status(order.id, payment_status='PAID')
        services.confirm_payment(order.id, BUYER)
        self.assertStock(self.product, 3, sales_count=2)

    def test_paid_on_cod_order_leaves_stock(self):
        order = self.place('COD', 3)

        order = services.update_order_status(order.id, payment_status='PAID')

        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertStock(self.product, 2, sales_count=3)

    def test_paid_does_not_move_shipped_order_back(self):
        order = self.place('COD', 1)
        services.update_order_status(order.id, order_status='SHIPPED')

        order = services.update_order_status(order.id, payment_status='PAID')

        self.assertEqual(order.order_status, Order.OrderStatus.SHIPPED)

    def test_refund_cancels_and_restores(self):
        order = self.place('COD', 3)

        order = services.update_order_status(order.id, payment_status='REFUNDED')

        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertIsNotNone(order.cancelled_at)
        self.assertStock(self.product, 5, sales_count=0)

    def test_cancel_paid_online_order_refunds_and_restores(self):
        order = self.place('ONLINE', 2)
        services.confirm_payment(order.id, BUYER)

        order = services.update_order_status(order.id, order_status='CANCELLED')

        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertStock(self.product, 5, sales_count=0)

    def test_cancel_unpaid_online_order_keeps_stock(self):
        order = self.place('ONLINE', 2)

        order = services.update_order_status(order.id, order_status='CANCELLED')

        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertStock(self.product, 5, sales_count=0)

    def test_cancel_cod_order_restores_without_refund(self):
        order = self.place('COD', 3)

        order = services.update_order_status(order.id, order_status='CANCELLED')

        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertStock(self.product, 5)

    def test_cancel_cannot_be_combined_with_paid(self):
        """
        Given: A paid ONLINE order holding 2 units of P
        When: An admin asks for CANCELLED and PAID together
        Then: The update is refused and order and stock stay as they were
        """
        order = self.place('ONLINE', 2)
        services.confirm_payment(order.id, BUYER)

        with self.assertRaises(ValidationError):
            services.update_order_status(
                order.id, order_status='CANCELLED', payment_status='PAID'
            )

        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.OrderStatus.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertTrue(order.stock_committed)
        self.assertStock(self.product, 3)

    def test_shipping_flow(self):
        order = self.place('COD', 1)

        order = services.update_order_status(order.id, order_status='SHIPPED')
        self.assertEqual(order.order_status, Order.OrderStatus.SHIPPED)

        order = services.update_order_status(
            order.id, order_status='FULFILLED', payment_status='PAID'
        )
        self.assertEqual(order.order_status, Order.OrderStatus.FULFILLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertStock(self.product, 4)

    def test_fulfilled_order_cannot_be_cancelled_directly(self):
        order = self.place('COD', 1)
        services.update_order_status(order.id, order_status='FULFILLED')

        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, order_status='CANCELLED')
        self.assertStock(self.product, 4)

        order = services.update_order_status(order.id, payment_status='REFUNDED')
        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertStock(self.product, 5)

    def test_cancelled_order_is_terminal(self):
        order = self.place('COD', 1)
        services.cancel_order(order.id, BUYER)

        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, order_status='CONFIRMED')
        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, payment_status='PAID')

        order = services.update_order_status(order.id, payment_status='REFUNDED')
        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)
        self.assertStock(self.product, 5)

    def test_invalid_input(self):
        order = self.place('COD', 1)

        with self.assertRaises(ValidationError):
            services.update_order_status(order.id)
        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, order_status='LOST')
        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, payment_status='FAILED')
        with self.assertRaises(NotFoundError):
            services.update_order_status(uuid.uuid4(), order_status='SHIPPED')


class StockInvariantTestCase(OrderTestMixin, TestCase):
    """
    stock + units held by committed orders == initial stock, whatever the
    sequence of transitions.
    """

    def test_random_transition_sequences(self):
        initial = self.product.stock + 15
        Product.objects.filter(pk=self.product.pk).update(stock=initial)
        rng = random.Random(2024)
        orders = []

        for _ in range(150):
            action = rng.choice(['create', 'pay', 'cancel', 'admin', 'admin'])
            try:
                if action == 'create' or not orders:
                    orders.append(self.place(
                        rng.choice(['COD', 'ONLINE']), rng.randint(1, 6)
                    ))
                elif action == 'pay':
                    services.confirm_payment(rng.choice(orders).id, BUYER)
                elif action == 'cancel':
                    services.cancel_order(rng.choice(orders).id, BUYER)
                else:
                    services.update_order_status(
                        rng.choice(orders).id,
                        order_status=rng.choice([None, 'CONFIRMED', 'SHIPPED', 'FULFILLED', 'CANCELLED']),
                        payment_status=rng.choice([None, 'PAID', 'REFUNDED']),
                    )
            except DomainError:
                pass

            self.product.refresh_from_db()
            held = sum(
                item.quantity for item in OrderItem.objects.filter(
                    order__stock_committed=True, product=self.product
                )
            )
            self.assertGreaterEqual(self.product.stock, 0)
            self.assertEqual(self.product.stock + held, initial)
            self.assertEqual(self.product.sales_count, held)

        for order in Order.objects.filter(order_status=Order.OrderStatus.CANCELLED):
            self.assertFalse(order.stock_committed)


class OrderQueryTestCase(OrderTestMixin, TestCase):

    def test_buyer_sees_only_own_orders(self):
        mine = self.place('COD', 1)
        self.place('COD', 1, buyer=OTHER_BUYER)

        orders = services.list_buyer_orders(BUYER)

        self.assertEqual([o.id for o in orders], [mine.id])
        self.assertEqual(services.get_buyer_order(mine.id, BUYER).id, mine.id)
        with self.assertRaises(ForbiddenError):
            services.get_buyer_order(mine.id, OTHER_BUYER)

    def test_admin_filters(self):
        self.place('COD', 1)
        online = self.place('ONLINE', 1)

        pending = services.list_orders(order_status='PENDING')
        self.assertEqual([o.id for o in pending], [online.id])
        self.assertEqual(len(services.list_orders()), 2)
        with self.assertRaises(ValidationError):
            services.list_orders(payment_status='LOST')

    def test_buyer_profiles_degrade_on_provider_failure(self):
        order = self.place('COD', 1)

        profiles = services.buyer_profiles([order], provider=BrokenIdentityProvider())

        self.assertTrue(profiles[BUYER]['unavailable'])
        self.assertEqual(profiles[BUYER]['full_name'], 'Unknown User')

    def test_buyer_profiles_one_lookup_per_buyer(self):
        orders = [self.place('COD', 1), self.place('COD', 1)]

        with patch.object(StaticIdentityProvider, 'profile',
                          return_value={'id': BUYER}) as profile:
            profiles = services.buyer_profiles(orders, provider=StaticIdentityProvider())

        profile.assert_called_once_with(BUYER)
        self.assertEqual(profiles, {BUYER: {'id': BUYER}})

    def test_cancel_abandoned_orders(self):
        stale = self.place('ONLINE', 1)
        fresh = self.place('ONLINE', 1)
        cod = self.place('COD', 1)
        paid = self.place('ONLINE', 1)
        services.confirm_payment(paid.id, BUYER)
        long_ago = timezone.now() - timedelta(hours=2)
        Order.objects.filter(pk__in=[stale.pk, cod.pk, paid.pk]).update(created_at=long_ago)

        cancelled = services.cancel_abandoned_orders()

        self.assertEqual(cancelled, 1)
        statuses = dict(Order.objects.values_list('pk', 'order_status'))
        self.assertEqual(statuses[stale.pk], Order.OrderStatus.CANCELLED)
        self.assertEqual(statuses[fresh.pk], Order.OrderStatus.PENDING)
        self.assertEqual(statuses[cod.pk], Order.OrderStatus.CONFIRMED)
        self.assertEqual(statuses[paid.pk], Order.OrderStatus.CONFIRMED)
        # COD order and paid order hold stock; abandoned one never did
        self.assertStock(self.product, 3)

    def test_order_statistics(self):
        self.place('COD', 1)
        paid = self.place('ONLINE', 2)
        services.confirm_payment(paid.id, BUYER)
        cancelled = self.place('ONLINE', 1)
        services.cancel_order(cancelled.id, BUYER)

        stats = services.order_statistics()

        self.assertEqual(stats['total_orders'], 3)
        self.assertEqual(stats['confirmed_orders'], 2)
        self.assertEqual(stats['cancelled_orders'], 1)
        self.assertEqual(stats['paid_orders'], 1)
        self.assertEqual(Decimal(stats['total_revenue']), Decimal('20.00'))


class OrderApiTestCase(OrderTestMixin, TestCase):
    """HTTP surface: envelopes, status codes, permissions."""

    buyer = {'HTTP_X_USER_ID': BUYER}
    other = {'HTTP_X_USER_ID': OTHER_BUYER}
    admin = {'HTTP_X_USER_ID': 'user_admin', 'HTTP_X_USER_ROLE': 'admin'}

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.provider = patch(
            'orders.services.get_identity_provider',
            return_value=StaticIdentityProvider()
        )
        self.provider.start()
        self.addCleanup(self.provider.stop)

    def create_payload(self, quantity=3, payment_method='COD'):
        return {
            'items': [{'product_id': self.product.id, 'quantity': quantity}],
            'shipping_address': ADDRESS,
            'payment_method': payment_method,
        }

    def test_create_order(self):
        response = self.client.post(reverse('orders:order-list'), self.create_payload(),
                                    format='json', **self.buyer)

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['message'], 'Order created successfully')
        order = response.data['order']
        self.assertEqual(order['order_status'], 'CONFIRMED')
        self.assertEqual(order['payment_method'], 'COD')
        self.assertEqual(order['total_amount'], '30.00')
        self.assertEqual(order['items'][0]['product']['name'], 'Product P')
        self.assertEqual(order['shipping_address']['city'], 'Colombo')
        self.assertNotIn('user', order)
        self.assertStock(self.product, 2)

    def test_create_order_insufficient_stock(self):
        response = self.client.post(reverse('orders:order-list'), self.create_payload(10),
                                    format='json', **self.buyer)

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])
        self.assertIn('Available: 5, Requested: 10', response.data['message'])
        self.assertStock(self.product, 5)

    def test_create_order_unknown_product(self):
        payload = self.create_payload()
        payload['items'][0]['product_id'] = 999999

        response = self.client.post(reverse('orders:order-list'), payload,
                                    format='json', **self.buyer)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data, {'success': False, 'message': 'Product not found: 999999'})

    def test_create_order_oversized_product_id(self):
        payload = self.create_payload()
        payload['items'][0]['product_id'] = 10**20

        response = self.client.post(reverse('orders:order-list'), payload,
                                    format='json', **self.buyer)

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])
        self.assertIn('product_id', response.data['message'])
        self.assertFalse(Order.objects.exists())
        self.assertStock(self.product, 5)

    def test_create_order_requires_identity(self):
        response = self.client.post(reverse('orders:order-list'), self.create_payload(),
                                    format='json')

        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.data['success'])

    def test_create_order_malformed_body(self):
        response = self.client.post(reverse('orders:order-list'),
                                    {'payment_method': 'COD', 'shipping_address': ADDRESS},
                                    format='json', **self.buyer)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['message'], 'items: This field is required.')

    def test_list_own_orders(self):
        self.place('COD', 1)
        self.place('COD', 1, buyer=OTHER_BUYER)

        response = self.client.get(reverse('orders:order-list'), **self.buyer)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['orders'][0]['buyer_id'], BUYER)
        self.assertEqual(response.data['orders'][0]['user']['full_name'], f"Name of {BUYER}")

    def test_order_detail_ownership(self):
        order = self.place('COD', 1)
        url = reverse('orders:order-detail', args=[order.id])

        response = self.client.get(url, **self.buyer)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['order']['id'], str(order.id))

        response = self.client.get(url, **self.other)
        self.assertEqual(response.status_code, 403)
        self.assertFalse(response.data['success'])

    def test_order_detail_bad_ids(self):
        response = self.client.get(reverse('orders:order-detail', args=['nope']), **self.buyer)
        self.assertEqual(response.status_code, 400)

        response = self.client.get(reverse('orders:order-detail', args=[uuid.uuid4()]), **self.buyer)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['message'], 'Order not found')

    def test_cancel(self):
        order = self.place('COD', 3)
        url = reverse('orders:order-cancel', args=[order.id])

        response = self.client.put(url, {}, format='json', **self.other)
        self.assertEqual(response.status_code, 403)

        response = self.client.put(url, {}, format='json', **self.buyer)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['order']['order_status'], 'CANCELLED')
        self.assertStock(self.product, 5)

        response = self.client.put(url, {}, format='json', **self.buyer)
        self.assertEqual(response.status_code, 400)

    def test_payment_complete(self):
        order = self.place('ONLINE', 2)
        url = reverse('orders:order-payment-complete', args=[order.id])

        response = self.client.put(url, {'order_status': 'confirmed'}, format='json', **self.buyer)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['order']['payment_status'], 'PAID')
        self.assertEqual(response.data['order']['order_status'], 'CONFIRMED')
        self.assertStock(self.product, 3)

        response = self.client.put(url, {'order_status': 'SHIPPED'}, format='json', **self.buyer)
        self.assertEqual(response.status_code, 400)

    def test_admin_endpoints_require_admin(self):
        order = self.place('COD', 1)
        urls = [
            reverse('orders:admin-order-list'),
            reverse('orders:admin-order-stats'),
            reverse('orders:admin-order-detail', args=[order.id]),
        ]
        for url in urls:
            with self.subTest(url=url):
                self.assertEqual(self.client.get(url).status_code, 401)
                self.assertEqual(self.client.get(url, **self.buyer).status_code, 403)
                self.assertEqual(self.client.get(url, **self.admin).status_code, 200)

    def test_admin_list_includes_buyer_profiles(self):
        self.place('COD', 1)
        self.place('ONLINE', 1, buyer=OTHER_BUYER)

        response = self.client.get(reverse('orders:admin-order-list'), **self.admin)

        self.assertEqual(response.data['count'], 2)
        names = {o['user']['full_name'] for o in response.data['orders']}
        self.assertEqual(names, {f"Name of {BUYER}", f"Name of {OTHER_BUYER}"})

        response = self.client.get(reverse('orders:admin-order-list'),
                                   {'order_status': 'pending'}, **self.admin)
        self.assertEqual(response.data['count'], 1)

    def test_admin_read_survives_identity_failure(self):
        order = self.place('COD', 1)

        with patch('orders.services.get_identity_provider',
                   return_value=BrokenIdentityProvider()):
            response = self.client.get(reverse('orders:admin-order-detail', args=[order.id]),
                                       **self.admin)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['order']['user']['unavailable'])

    def test_admin_status_update(self):
        order = self.place('COD', 1)
        url = reverse('orders:admin-order-status', args=[order.id])

        response = self.client.put(url, {'status': 'shipped'}, format='json', **self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['message'], 'Order status updated')
        self.assertEqual(response.data['order']['order_status'], 'SHIPPED')

        response = self.client.put(url, {'status': 'LOST'}, format='json', **self.admin)
        self.assertEqual(response.status_code, 400)
        self.assertIn('Invalid order status', response.data['message'])

        response = self.client.put(url, {}, format='json', **self.admin)
        self.assertEqual(response.status_code, 400)

    def test_admin_payment_refund(self):
        order = self.place('COD', 3)
        url = reverse('orders:admin-order-payment', args=[order.id])

        response = self.client.put(url, {'payment_status': 'REFUNDED'}, format='json', **self.admin)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['message'], 'Payment status updated')
        self.assertEqual(response.data['order']['order_status'], 'CANCELLED')
        self.assertStock(self.product, 5)

    def test_admin_stats(self):
        self.place('COD', 1)

        response = self.client.get(reverse('orders:admin-order-stats'), **self.admin)

        self.assertEqual(response.data['stats']['total_orders'], 1)

    def test_webhook_requires_configured_secret(self):
        order = self.place('ONLINE', 2)
        url = reverse('orders:order-webhook-update', args=[order.id])

        response = self.client.put(url, {'payment_status': 'PAID'}, format='json',
                                   HTTP_X_WEBHOOK_SECRET='anything')
        self.assertEqual(response.status_code, 403)

        with override_settings(ORDERS_WEBHOOK_SECRET='s3cret'):
            response = self.client.put(url, {'payment_status': 'PAID'}, format='json',
                                       HTTP_X_WEBHOOK_SECRET='wrong')
            self.assertEqual(response.status_code, 403)

            response = self.client.put(url, {'payment_status': 'PAID'}, format='json',
                                       HTTP_X_WEBHOOK_SECRET='s3cret')
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.data['order']['payment_status'], 'PAID')
            self.assertEqual(response.data['order']['order_status'], 'CONFIRMED')

        self.assertStock(self.product, 3)

    def test_unexpected_error_is_generic_500(self):
        with patch('orders.services.list_buyer_orders', side_effect=RuntimeError('db exploded')):
            with self.assertLogs('core.exceptions', level='ERROR'):
                response = self.client.get(reverse('orders:order-list'), **self.buyer)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data, {'success': False, 'message': 'Internal Server Error'})


class OrderTaskTestCase(OrderTestMixin, TestCase):
    """Celery tasks run synchronously by calling them directly."""

    def test_confirmation_for_confirmed_order(self):
        order = self.place('COD', 1)

        result = send_order_confirmation(str(order.id))

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['order_id'], str(order.id))

    def test_confirmation_skips_unconfirmed_order(self):
        order = self.place('ONLINE', 1)

        result = send_order_confirmation(str(order.id))

        self.assertEqual(result['status'], 'skipped')

    def test_confirmation_missing_order(self):
        result = send_order_confirmation(str(uuid.uuid4()))

        self.assertEqual(result['status'], 'error')

    def test_expire_abandoned_orders_task(self):
        order = self.place('ONLINE', 1)
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(days=1))

        self.assertEqual(expire_abandoned_orders(), {'cancelled': 1})
        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.OrderStatus.CANCELLED)

    def test_daily_report(self):
        order = self.place('COD', 2)
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(days=1))

        stats = generate_daily_order_report()

        self.assertEqual(stats['total_orders'], 1)
        self.assertEqual(stats['confirmed_orders'], 1)
        self.assertEqual(stats['total_revenue'], '0.00')
