"""
Inventory Ledger - stock and sales counter mutations driven by orders.

Operations:
    - deduct(lines): stock -= quantity, sales_count += quantity
    - restore(lines): stock += quantity, sales_count -= quantity (floor 0)
    - receive(product_id, quantity): stock += quantity for deliveries

Each call runs in one transaction with the product rows locked
(select_for_update, ordered by id to avoid deadlocks). A deduction that
would take any product below zero raises InsufficientStockError and applies
nothing. Products that no longer exist are logged and skipped.

The ledger does not remember which orders it has applied; callers guard
with Order.stock_committed.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from django.db import transaction

from core.exceptions import NotFoundError, ValidationError
from .models import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class Shortage:
    product_id: int
    product_name: str
    requested: int
    available: int

    def describe(self) -> str:
        return (
            f"Insufficient stock for {self.product_name}. "
            f"Available: {self.available}, Requested: {self.requested}"
        )


class InsufficientStockError(ValidationError):
    """Raised when one or more products cannot cover the requested quantity."""

    def __init__(self, shortages: List[Shortage]):
        self.shortages = shortages
        super().__init__("; ".join(s.describe() for s in shortages))


def _lock_products(lines: List[StockLine]) -> Dict[int, Product]:
    product_ids = sorted({line.product_id for line in lines})
    queryset = Product.objects.select_for_update().filter(id__in=product_ids).order_by('id')
    return {product.id: product for product in queryset}


def _validate_lines(lines: List[StockLine]) -> None:
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(
                f"Quantity for product {line.product_id} must be a positive integer"
            )


def find_shortages(lines: Iterable[StockLine], products: Dict[int, Product]) -> List[Shortage]:
    """Products that exist but hold less stock than the lines request in total."""
    requested: Dict[int, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    shortages = []
    for product_id, quantity in requested.items():
        product = products.get(product_id)
        if product is not None and product.stock < quantity:
            shortages.append(Shortage(
                product_id=product.id,
                product_name=product.name,
                requested=quantity,
                available=product.stock
            ))
    return shortages


def deduct(lines: Iterable[StockLine]) -> int:
    """
    Take stock for every line and count the units as sold.

    Args:
        lines: StockLine per order item

    Returns:
        Number of lines applied (missing products are skipped)

    Raises:
        InsufficientStockError: If any product has less stock than requested;
            no product is changed in that case
    """
    lines = list(lines)
    _validate_lines(lines)

    with transaction.atomic():
        products = _lock_products(lines)

        shortages = find_shortages(lines, products)
        if shortages:
            logger.warning(
                f"Stock deduction refused: {len(shortages)} of {len(lines)} lines short"
            )
            raise InsufficientStockError(shortages)

        applied = 0
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                logger.error(f"Product {line.product_id} not found, skipping stock deduction")
                continue

            product.stock -= line.quantity
            product.sales_count += line.quantity
            product.save(update_fields=['stock', 'sales_count', 'updated_at'])
            applied += 1

            logger.debug(
                f"Deducted {line.quantity} of {product.name}, "
                f"remaining stock: {product.stock}"
            )

    logger.info(f"Stock deducted for {applied}/{len(lines)} lines")
    return applied


def restore(lines: Iterable[StockLine]) -> int:
    """
    Put stock back for every line and undo the counted sales.

    sales_count never drops below zero.

    Returns:
        Number of lines applied (missing products are skipped)
    """
    lines = list(lines)
    _validate_lines(lines)

    with transaction.atomic():
        products = _lock_products(lines)

        applied = 0
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                logger.error(f"Product {line.product_id} not found, skipping stock restore")
                continue

            product.stock += line.quantity
            if product.sales_count >= line.quantity:
                product.sales_count -= line.quantity
            else:
                product.sales_count = 0
            product.save(update_fields=['stock', 'sales_count', 'updated_at'])
            applied += 1

            logger.debug(
                f"Restored {line.quantity} of {product.name}, "
                f"stock now: {product.stock}"
            )

    logger.info(f"Stock restored for {applied}/{len(lines)} lines")
    return applied


def receive(product_id: int, quantity: int) -> Product:
    """
    Book a delivery: stock += quantity. sales_count is not touched.

    Raises:
        NotFoundError: If the product does not exist
        ValidationError: If quantity is not positive
    """
    line = StockLine(product_id, quantity)
    _validate_lines([line])

    with transaction.atomic():
        product = _lock_products([line]).get(product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")

        product.stock += quantity
        product.save(update_fields=['stock', 'updated_at'])

    logger.info(f"Received {quantity} of {product.name}, stock now: {product.stock}")
    return product
