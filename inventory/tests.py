"""
Tests for the inventory ledger and catalog API.

Test Cases:
1. Deduction moves stock into sales_count
2. Insufficient stock refuses the whole batch
3. Restore floors sales_count at zero
4. Missing products are skipped
5. Discounted final price
6. Deliveries add stock without touching sales_count
7. Catalog endpoints: public reads, admin writes, restock, featured
"""
from decimal import Decimal

from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from core.exceptions import NotFoundError, ValidationError
from inventory.ledger import InsufficientStockError, StockLine, deduct, receive, restore
from inventory.models import Category, Product


class LedgerTestCase(TestCase):
    """Test cases for stock deduction and restoration."""

    def setUp(self):
        self.category = Category.objects.create(name='Ledger Category')
        self.product1 = Product.objects.create(
            category=self.category,
            name='Ledger Product 1',
            price=Decimal('10.00'),
            stock=100
        )
        self.product2 = Product.objects.create(
            category=self.category,
            name='Ledger Product 2',
            price=Decimal('25.00'),
            stock=5,
            sales_count=2
        )

    def test_deduct_moves_stock_to_sales(self):
        applied = deduct([
            StockLine(self.product1.id, 7),
            StockLine(self.product2.id, 5),
        ])

        self.assertEqual(applied, 2)
        self.product1.refresh_from_db()
        self.product2.refresh_from_db()
        self.assertEqual(self.product1.stock, 93)
        self.assertEqual(self.product1.sales_count, 7)
        self.assertEqual(self.product2.stock, 0)
        self.assertEqual(self.product2.sales_count, 7)

    def test_deduct_refuses_whole_batch_on_shortage(self):
        """
        Given: product2 has only 5 units
        When: Deducting 6 of product2 together with product1
        Then: Nothing changes and the error names the shortage
        """
        with self.assertRaises(InsufficientStockError) as context:
            deduct([
                StockLine(self.product1.id, 10),
                StockLine(self.product2.id, 6),
            ])

        self.assertIn('Ledger Product 2', str(context.exception))
        self.assertIn('Available: 5, Requested: 6', str(context.exception))
        self.assertEqual(len(context.exception.shortages), 1)

        self.product1.refresh_from_db()
        self.product2.refresh_from_db()
        self.assertEqual(self.product1.stock, 100)
        self.assertEqual(self.product1.sales_count, 0)
        self.assertEqual(self.product2.stock, 5)

    def test_insufficient_stock_is_a_validation_error(self):
        with self.assertRaises(ValidationError):
            deduct([StockLine(self.product2.id, 50)])

    def test_deduct_checks_combined_quantity_per_product(self):
        with self.assertRaises(InsufficientStockError) as context:
            deduct([
                StockLine(self.product2.id, 3),
                StockLine(self.product2.id, 3),
            ])

        self.assertIn('Requested: 6', str(context.exception))
        self.product2.refresh_from_db()
        self.assertEqual(self.product2.stock, 5)

    def test_deduct_exact_stock_reaches_zero(self):
        deduct([StockLine(self.product2.id, 5)])

        self.product2.refresh_from_db()
        self.assertEqual(self.product2.stock, 0)
        self.assertTrue(self.product2.is_out_of_stock)

    def test_restore_returns_stock_and_sales(self):
        deduct([StockLine(self.product1.id, 20)])
        restore([StockLine(self.product1.id, 20)])

        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 100)
        self.assertEqual(self.product1.sales_count, 0)

    def test_restore_floors_sales_count_at_zero(self):
        restore([StockLine(self.product2.id, 4)])

        self.product2.refresh_from_db()
        self.assertEqual(self.product2.stock, 9)
        self.assertEqual(self.product2.sales_count, 0)

    def test_missing_product_is_skipped(self):
        with self.assertLogs('inventory.ledger', level='ERROR') as logs:
            applied = deduct([
                StockLine(999999, 1),
                StockLine(self.product1.id, 1),
            ])

        self.assertEqual(applied, 1)
        self.assertIn('999999', logs.output[0])
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 99)

        self.assertEqual(restore([StockLine(999999, 1)]), 0)

    def test_non_positive_quantity_rejected(self):
        with self.assertRaises(ValidationError):
            deduct([StockLine(self.product1.id, 0)])
        with self.assertRaises(ValidationError):
            restore([StockLine(self.product1.id, -2)])

        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 100)

    def test_receive_adds_stock_only(self):
        product = receive(self.product2.id, 10)

        self.assertEqual(product.stock, 15)
        self.product2.refresh_from_db()
        self.assertEqual(self.product2.stock, 15)
        self.assertEqual(self.product2.sales_count, 2)

    def test_receive_unknown_product(self):
        with self.assertRaises(NotFoundError):
            receive(999999, 1)
        with self.assertRaises(ValidationError):
            receive(self.product1.id, 0)

    def test_stock_never_negative_over_operation_sequence(self):
        import random

        rng = random.Random(42)
        for _ in range(200):
            quantity = rng.randint(1, 40)
            line = StockLine(rng.choice([self.product1.id, self.product2.id]), quantity)
            try:
                if rng.random() < 0.6:
                    deduct([line])
                else:
                    restore([line])
            except InsufficientStockError:
                pass

            for product in Product.objects.all():
                self.assertGreaterEqual(product.stock, 0)
                self.assertGreaterEqual(product.sales_count, 0)


class ProductModelTestCase(TestCase):

    def setUp(self):
        self.category = Category.objects.create(name='Model Category')

    def test_final_price_without_discount(self):
        product = Product(category=self.category, name='Plain', price=Decimal('19.99'))
        self.assertEqual(product.final_price, Decimal('19.99'))

    def test_final_price_with_discount(self):
        product = Product(
            category=self.category,
            name='Discounted',
            price=Decimal('40.00'),
            discount=Decimal('25')
        )
        self.assertEqual(product.final_price, Decimal('30.00'))

    def test_final_price_rounds_half_up_to_cents(self):
        product = Product(
            category=self.category,
            name='Odd',
            price=Decimal('9.99'),
            discount=Decimal('15')
        )
        # 9.99 * 0.85 = 8.4915
        self.assertEqual(product.final_price, Decimal('8.49'))

    def test_low_stock_flag(self):
        product = Product(
            category=self.category,
            name='Low',
            price=Decimal('1.00'),
            stock=3,
            low_stock_threshold=5
        )
        self.assertTrue(product.is_low_stock)
        self.assertFalse(product.is_out_of_stock)


class CatalogApiTestCase(TestCase):
    """Catalog endpoints: anyone reads, admins write."""

    admin_headers = {'HTTP_X_USER_ID': 'user_admin', 'HTTP_X_USER_ROLE': 'admin'}
    buyer_headers = {'HTTP_X_USER_ID': 'user_buyer'}

    def setUp(self):
        self.client = APIClient()
        self.category = Category.objects.create(name='Electronics')
        self.speaker = Product.objects.create(
            category=self.category,
            name='Bluetooth Speaker',
            description='Portable speaker',
            price=Decimal('50.00'),
            discount=Decimal('10'),
            stock=12
        )
        self.cable = Product.objects.create(
            category=self.category,
            name='USB-C Cable',
            price=Decimal('8.00'),
            stock=0
        )

    def test_product_list_is_public(self):
        response = self.client.get(reverse('inventory:product-list'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 2)
        speaker = next(p for p in response.data['results'] if p['name'] == 'Bluetooth Speaker')
        self.assertEqual(speaker['final_price'], '45.00')

    def test_product_create_requires_admin(self):
        payload = {
            'name': 'Power Bank',
            'price': '30.00',
            'category_id': self.category.id,
            'stock': 40
        }

        response = self.client.post(reverse('inventory:product-list'), payload,
                                    format='json', **self.buyer_headers)
        self.assertEqual(response.status_code, 403)
        self.assertFalse(response.data['success'])

        response = self.client.post(reverse('inventory:product-list'), payload,
                                    format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['stock'], 40)
        self.assertEqual(response.data['sales_count'], 0)

    def test_product_update_cannot_change_stock(self):
        response = self.client.patch(
            reverse('inventory:product-detail', args=[self.speaker.id]),
            {'stock': 999, 'price': '55.00'},
            format='json',
            **self.admin_headers
        )

        self.assertEqual(response.status_code, 200)
        self.speaker.refresh_from_db()
        self.assertEqual(self.speaker.stock, 12)
        self.assertEqual(self.speaker.price, Decimal('55.00'))

    def test_search_filters(self):
        response = self.client.get(reverse('inventory:product-search'), {'q': 'speaker'})
        self.assertEqual([p['name'] for p in response.data['results']], ['Bluetooth Speaker'])

        response = self.client.get(reverse('inventory:product-search'), {'in_stock': 'true'})
        self.assertEqual([p['name'] for p in response.data['results']], ['Bluetooth Speaker'])

        response = self.client.get(reverse('inventory:product-search'), {'max_price': 'abc'})
        self.assertEqual(response.data['count'], 2)

    def test_autocomplete(self):
        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'bl'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['message'], 'Query must be at least 3 characters')

        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'blu'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]['name'], 'Bluetooth Speaker')

    def test_list_filters_by_category(self):
        books = Category.objects.create(name='Books')
        Product.objects.create(category=books, name='Cookbook', price=Decimal('12.00'), stock=4)

        response = self.client.get(reverse('inventory:product-list'), {'category_id': books.id})

        self.assertEqual([p['name'] for p in response.data['results']], ['Cookbook'])

    def test_category_counts_active_products(self):
        self.cable.is_active = False
        self.cable.save()

        response = self.client.get(reverse('inventory:category-detail', args=[self.category.id]))

        self.assertEqual(response.data['product_count'], 1)

    def test_category_name_unique_ignoring_case(self):
        response = self.client.post(reverse('inventory:category-list'), {'name': ' electronics '},
                                    format='json', **self.admin_headers)

        self.assertEqual(response.status_code, 400)
        self.assertIn('already exists', response.data['message'])

    def test_featured_lists_best_sellers_in_stock(self):
        Product.objects.filter(pk=self.speaker.pk).update(sales_count=7)
        Product.objects.filter(pk=self.cable.pk).update(sales_count=50)

        response = self.client.get(reverse('inventory:product-featured'))

        self.assertEqual(response.status_code, 200)
        # The cable sells best but is sold out
        self.assertEqual([p['name'] for p in response.data], ['Bluetooth Speaker'])

    def test_restock(self):
        url = reverse('inventory:product-restock', args=[self.cable.id])

        response = self.client.post(url, {'quantity': 25}, format='json', **self.buyer_headers)
        self.assertEqual(response.status_code, 403)

        response = self.client.post(url, {'quantity': 0}, format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 400)

        response = self.client.post(url, {'quantity': 25}, format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['product']['stock'], 25)

        response = self.client.post(reverse('inventory:product-restock', args=[999999]),
                                    {'quantity': 1}, format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 404)

    def test_oversized_ids_are_rejected_cleanly(self):
        huge = 10**20

        response = self.client.post(reverse('inventory:product-restock', args=[huge]),
                                    {'quantity': 1}, format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 404)

        response = self.client.get(reverse('inventory:product-detail', args=[huge]))
        self.assertEqual(response.status_code, 404)

        response = self.client.get(reverse('inventory:product-list'), {'category_id': huge})
        self.assertEqual(response.status_code, 200)

        payload = {'name': 'Power Bank', 'price': '30.00', 'category_id': huge, 'stock': 1}
        response = self.client.post(reverse('inventory:product-list'), payload,
                                    format='json', **self.admin_headers)
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])
        self.assertFalse(Product.objects.filter(name='Power Bank').exists())

    def test_inactive_product_hidden_from_buyers(self):
        self.cable.is_active = False
        self.cable.save()
        url = reverse('inventory:product-detail', args=[self.cable.id])

        self.assertEqual(self.client.get(url).status_code, 404)
        self.assertEqual(self.client.get(url, **self.admin_headers).status_code, 200)
