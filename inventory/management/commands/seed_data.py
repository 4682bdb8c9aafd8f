"""
Management command to seed the catalog with sample data.

Generates:
- Categories from a fixed list
- Products with prices, stock levels and occasional discounts

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Remove orders and catalog first
    python manage.py seed_data --products 50 --seed 7
"""
import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Category, Product

CATEGORY_PRODUCTS = {
    'Electronics': [
        'Wireless Headphones', 'Bluetooth Speaker', 'Power Bank',
        'Smart Watch', 'Mechanical Keyboard', 'Webcam HD',
    ],
    'Clothing': [
        'Cotton T-Shirt', 'Denim Jeans', 'Wool Sweater', 'Rain Jacket',
        'Running Shoes', 'Winter Coat',
    ],
    'Home & Garden': [
        'Plant Pot Set', 'LED Light Bulbs', 'Throw Pillow', 'Wall Clock',
        'Kitchen Knife Set', 'Storage Bins',
    ],
    'Sports & Outdoors': [
        'Yoga Mat', 'Water Bottle', 'Camping Tent', 'Hiking Backpack',
        'Bicycle Helmet', 'Tennis Racket',
    ],
    'Books': [
        'Fiction Bestseller', 'Cookbook', 'Biography', 'Travel Guide',
        'Programming Guide', 'History Book',
    ],
}

ADJECTIVES = ['Premium', 'Classic', 'Modern', 'Compact', 'Essential', 'Eco-Friendly']
COLORS = ['Black', 'White', 'Silver', 'Blue', 'Red', 'Green', 'Gray']


class Command(BaseCommand):
    help = 'Seed the database with sample categories and products'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Delete existing orders, products and categories first',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=100,
            help='Number of products to create (default: 100)',
        )
        parser.add_argument(
            '--seed',
            type=int,
            default=None,
            help='Random seed for reproducible data',
        )

    def handle(self, *args, **options):
        rng = random.Random(options['seed'])

        with transaction.atomic():
            if options['clear']:
                self._clear_data()
            categories = self._create_categories()
            created = self._create_products(options['products'], categories, rng)

        self.stdout.write(self.style.SUCCESS(
            f'Seeding complete: {len(categories)} categories, {created} new products'
        ))

    def _clear_data(self):
        """Orders reference products and addresses, so they go first."""
        from orders.models import Address, Order

        Order.objects.all().delete()
        Address.objects.all().delete()
        Product.objects.all().delete()
        Category.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_categories(self):
        categories = []
        for name in CATEGORY_PRODUCTS:
            category, created = Category.objects.get_or_create(name=name)
            categories.append(category)
            if created:
                self.stdout.write(f'  Created category: {name}')
        return categories

    def _create_products(self, count, categories, rng):
        """Create products; roughly a third carry a discount of up to 30%."""
        existing_names = set(Product.objects.values_list('name', flat=True))
        products = []

        for i in range(count):
            category = rng.choice(categories)
            base_name = rng.choice(CATEGORY_PRODUCTS[category.name])
            name = f"{rng.choice(ADJECTIVES)} {rng.choice(COLORS)} {base_name}"
            if name in existing_names:
                name = f"{name} #{i + 1}"
            existing_names.add(name)

            discount = rng.randint(5, 30) if rng.random() < 0.3 else 0

            products.append(Product(
                category=category,
                name=name,
                description=f"{base_name} from our {category.name.lower()} range.",
                price=Decimal(str(round(rng.uniform(5, 500), 2))),
                discount=Decimal(discount),
                stock=rng.randint(0, 200),
                low_stock_threshold=rng.randint(5, 20),
                is_active=rng.random() > 0.05,  # 95% active
            ))

        Product.objects.bulk_create(products)
        return len(products)
