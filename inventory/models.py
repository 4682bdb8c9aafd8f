"""
Catalog models.

Product.stock and Product.sales_count are bookkeeping fields owned by
inventory.ledger; nothing else writes them after a product is created.
"""
from decimal import Decimal, ROUND_HALF_UP

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

CENT = Decimal('0.01')

# Upper bound of a BigAutoField primary key.
MAX_ID = 2**63 - 1


class Timestamped(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Category(Timestamped):
    name = models.CharField(max_length=100, unique=True)

    class Meta:
        verbose_name_plural = 'categories'
        ordering = ['name']

    def __str__(self):
        return self.name


class ProductQuerySet(models.QuerySet):

    def active(self):
        return self.filter(is_active=True)

    def orderable(self):
        """Active and with at least one unit left."""
        return self.active().filter(stock__gt=0)

    def low_stock(self):
        return self.filter(stock__lte=models.F('low_stock_threshold'))


class Product(Timestamped):
    """
    A sellable item.

    discount is a percentage off the list price; final_price is the unit
    price an order captures at placement time.
    """
    category = models.ForeignKey(
        Category,
        on_delete=models.PROTECT,
        related_name='products'
    )
    name = models.CharField(max_length=200, db_index=True)
    description = models.TextField(blank=True, default='')
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(CENT)],
        help_text="List price before discount"
    )
    discount = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('0'),
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('100'))],
        help_text="Percent off the list price, 0 to 100"
    )
    image_url = models.URLField(max_length=500, blank=True, default='')
    stock = models.PositiveIntegerField(default=0, help_text="Units on hand")
    sales_count = models.PositiveIntegerField(
        default=0,
        help_text="Units currently sold through orders that hold stock"
    )
    low_stock_threshold = models.PositiveIntegerField(default=10)
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive products are hidden and cannot be ordered"
    )

    objects = ProductQuerySet.as_manager()

    class Meta:
        ordering = ['name']
        indexes = [
            models.Index(fields=['is_active', 'name']),
            models.Index(fields=['category', 'is_active']),
            models.Index(fields=['-sales_count']),
        ]

    def __str__(self):
        return self.name

    @property
    def final_price(self) -> Decimal:
        price = Decimal(self.price)
        discount = Decimal(self.discount or 0)
        if discount > 0:
            price = price * (1 - discount / 100)
        return price.quantize(CENT, rounding=ROUND_HALF_UP)

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock == 0
