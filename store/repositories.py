"""Storage ports for orders and the catalog.

Each store is an ABC with a Django ORM implementation used by the views
and an in-memory implementation used by service tests. Lookups raise
``NotFound`` instead of returning ``None``; write failures surface as
``PersistenceError``.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .exceptions import InvalidState, NotFound, PersistenceError
from .models import Order, OrderItem, Product, ProductVariant


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    offset = (page - 1) * page_size
    return offset, offset + page_size


class OrderRepository(ABC):
    @abstractmethod
    def get_by_id(self, order_id) -> Order:
        """Return the order or raise ``NotFound``."""

    @abstractmethod
    def create(self, order: Order, items: List[OrderItem]) -> None:
        ...

    @abstractmethod
    def update(self, order: Order, expected_status: Optional[str] = None) -> None:
        """Persist status, payment status and totals. Fails if the row is gone.

        With ``expected_status`` the write only lands while the stored order
        still has that status; otherwise ``InvalidState`` is raised and
        nothing changes.
        """

    @abstractmethod
    def list(self, page: int, page_size: int, status: Optional[str] = None,
             payment_status: Optional[str] = None, customer_id: Optional[int] = None) -> Tuple[List[Order], int]:
        ...

    @abstractmethod
    def get_items(self, order_id) -> List[OrderItem]:
        ...


class ProductRepository(ABC):
    @abstractmethod
    def get_by_id(self, product_id, for_update: bool = False) -> Product:
        """Return the product or raise ``NotFound``; ``for_update`` locks the row."""

    @abstractmethod
    def create(self, product: Product) -> None:
        ...

    @abstractmethod
    def update(self, product: Product) -> None:
        ...

    @abstractmethod
    def delete(self, product_id) -> None:
        ...

    @abstractmethod
    def list(self, page: int, page_size: int, in_stock_only: bool = False) -> Tuple[List[Product], int]:
        ...


class VariantRepository(ABC):
    @abstractmethod
    def get_by_id(self, variant_id, for_update: bool = False) -> ProductVariant:
        """Return a live (not soft-deleted) variant or raise ``NotFound``."""

    @abstractmethod
    def create(self, variant: ProductVariant) -> None:
        ...

    @abstractmethod
    def update(self, variant: ProductVariant) -> None:
        ...

    @abstractmethod
    def delete(self, variant_id) -> None:
        """Soft delete: stamp ``deleted_at`` and hide the variant from reads."""

    @abstractmethod
    def list_by_product(self, product_id, page: int, page_size: int) -> Tuple[List[ProductVariant], int]:
        ...


class DjangoOrderRepository(OrderRepository):
    def get_by_id(self, order_id) -> Order:
        try:
            return Order.objects.get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFound("Order not found")

    def create(self, order: Order, items: List[OrderItem]) -> None:
        try:
            with transaction.atomic():
                order.save(force_insert=True)
                for item in items:
                    item.order = order
                OrderItem.objects.bulk_create(items)
        except DatabaseError as exc:
            raise PersistenceError("Failed to create order") from exc

    def update(self, order: Order, expected_status: Optional[str] = None) -> None:
        if expected_status is None:
            try:
                order.save(update_fields=["status", "payment_status", "total_price", "updated_at"])
            except DatabaseError as exc:
                raise PersistenceError(f"Failed to update order {order.pk}") from exc
            return

        order.updated_at = timezone.now()
        try:
            rows = Order.objects.filter(pk=order.pk, status=expected_status).update(
                status=order.status,
                payment_status=order.payment_status,
                total_price=order.total_price,
                updated_at=order.updated_at,
            )
            current = None if rows else Order.objects.filter(pk=order.pk).values_list("status", flat=True).first()
        except DatabaseError as exc:
            raise PersistenceError(f"Failed to update order {order.pk}") from exc
        if rows:
            return
        if current is None:
            raise PersistenceError(f"Failed to update order {order.pk}")
        raise InvalidState(f"order is not {expected_status} (current status: {current})")

    def list(self, page, page_size, status=None, payment_status=None, customer_id=None):
        queryset = Order.objects.all()
        if customer_id is not None:
            queryset = queryset.filter(customer_id=customer_id)
        if status:
            queryset = queryset.filter(status=status)
        if payment_status:
            queryset = queryset.filter(payment_status=payment_status)
        start, end = page_bounds(page, page_size)
        return list(queryset[start:end]), queryset.count()

    def get_items(self, order_id) -> List[OrderItem]:
        return list(OrderItem.objects.filter(order_id=order_id).select_related("product", "variant").order_by("id"))


class DjangoProductRepository(ProductRepository):
    def get_by_id(self, product_id, for_update=False) -> Product:
        queryset = Product.objects.select_for_update() if for_update else Product.objects.all()
        try:
            return queryset.get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFound("Product not found")

    def create(self, product: Product) -> None:
        try:
            product.save(force_insert=True)
        except DatabaseError as exc:
            raise PersistenceError("Failed to create product") from exc

    def update(self, product: Product) -> None:
        try:
            product.save(update_fields=["name", "description", "price", "quantity", "updated_at"])
        except DatabaseError as exc:
            raise PersistenceError(f"Failed to update product {product.pk}") from exc

    def delete(self, product_id) -> None:
        product = self.get_by_id(product_id)
        try:
            product.delete()
        except IntegrityError as exc:
            raise InvalidState("Product is referenced by existing orders") from exc

    def list(self, page, page_size, in_stock_only=False):
        queryset = Product.objects.all()
        if in_stock_only:
            queryset = queryset.filter(quantity__gt=0)
        start, end = page_bounds(page, page_size)
        return list(queryset[start:end]), queryset.count()


class DjangoVariantRepository(VariantRepository):
    def _live(self, for_update=False):
        queryset = ProductVariant.objects.select_for_update() if for_update else ProductVariant.objects.all()
        return queryset.filter(deleted_at__isnull=True).select_related("product")

    def get_by_id(self, variant_id, for_update=False) -> ProductVariant:
        try:
            return self._live(for_update).get(pk=variant_id)
        except ProductVariant.DoesNotExist:
            raise NotFound("Product variant not found")

    def create(self, variant: ProductVariant) -> None:
        try:
            variant.save(force_insert=True)
        except DatabaseError as exc:
            raise PersistenceError("Failed to create product variant") from exc

    def update(self, variant: ProductVariant) -> None:
        try:
            variant.save()
        except DatabaseError as exc:
            raise PersistenceError(f"Failed to update product variant {variant.pk}") from exc

    def delete(self, variant_id) -> None:
        variant = self.get_by_id(variant_id)
        variant.soft_delete()
        variant.save(update_fields=["deleted_at", "updated_at"])

    def list_by_product(self, product_id, page, page_size):
        queryset = self._live().filter(product_id=product_id)
        start, end = page_bounds(page, page_size)
        return list(queryset[start:end]), queryset.count()


class InMemoryOrderRepository(OrderRepository):
    """Dict-backed order store.

    Stores and returns deep copies so callers must go through ``update``
    for changes to stick, like with the database.
    """

    def __init__(self) -> None:
        self._orders: Dict = {}
        self._items: Dict = {}

    def get_by_id(self, order_id) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        return copy.deepcopy(order)

    def create(self, order: Order, items: List[OrderItem]) -> None:
        now = timezone.now()
        order.created_at = order.created_at or now
        order.updated_at = order.updated_at or now
        for item in items:
            item.order = order
        self._orders[order.pk] = copy.deepcopy(order)
        self._items[order.pk] = copy.deepcopy(items)

    def update(self, order: Order, expected_status: Optional[str] = None) -> None:
        stored = self._orders.get(order.pk)
        if stored is None:
            raise PersistenceError(f"Failed to update order {order.pk}")
        if expected_status is not None and stored.status != expected_status:
            raise InvalidState(f"order is not {expected_status} (current status: {stored.status})")
        self._orders[order.pk] = copy.deepcopy(order)

    def list(self, page, page_size, status=None, payment_status=None, customer_id=None):
        orders = [
            order for order in self._orders.values()
            if (customer_id is None or order.customer_id == customer_id)
            and (not status or order.status == status)
            and (not payment_status or order.payment_status == payment_status)
        ]
        orders.sort(key=lambda order: order.created_at, reverse=True)
        start, end = page_bounds(page, page_size)
        return copy.deepcopy(orders[start:end]), len(orders)

    def get_items(self, order_id) -> List[OrderItem]:
        return copy.deepcopy(self._items.get(order_id, []))


class InMemoryProductRepository(ProductRepository):
    def __init__(self) -> None:
        self._products: Dict = {}

    def get_by_id(self, product_id, for_update=False) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFound("Product not found")
        return copy.deepcopy(product)

    def create(self, product: Product) -> None:
        now = timezone.now()
        product.created_at = product.created_at or now
        product.updated_at = now
        self._products[product.pk] = copy.deepcopy(product)

    def update(self, product: Product) -> None:
        if product.pk not in self._products:
            raise PersistenceError(f"Failed to update product {product.pk}")
        product.updated_at = timezone.now()
        self._products[product.pk] = copy.deepcopy(product)

    def delete(self, product_id) -> None:
        if self._products.pop(product_id, None) is None:
            raise NotFound("Product not found")

    def list(self, page, page_size, in_stock_only=False):
        products = [p for p in self._products.values() if not in_stock_only or p.quantity > 0]
        products.sort(key=lambda product: product.created_at, reverse=True)
        start, end = page_bounds(page, page_size)
        return copy.deepcopy(products[start:end]), len(products)


class InMemoryVariantRepository(VariantRepository):
    def __init__(self) -> None:
        self._variants: Dict = {}

    def get_by_id(self, variant_id, for_update=False) -> ProductVariant:
        variant = self._variants.get(variant_id)
        if variant is None or variant.deleted_at is not None:
            raise NotFound("Product variant not found")
        return copy.deepcopy(variant)

    def create(self, variant: ProductVariant) -> None:
        now = timezone.now()
        variant.created_at = variant.created_at or now
        variant.updated_at = now
        self._variants[variant.pk] = copy.deepcopy(variant)

    def update(self, variant: ProductVariant) -> None:
        if variant.pk not in self._variants:
            raise PersistenceError(f"Failed to update product variant {variant.pk}")
        self._variants[variant.pk] = copy.deepcopy(variant)

    def delete(self, variant_id) -> None:
        variant = self.get_by_id(variant_id)
        variant.soft_delete()
        self._variants[variant.pk] = variant

    def list_by_product(self, product_id, page, page_size):
        variants = [
            v for v in self._variants.values()
            if v.product_id == product_id and v.deleted_at is None
        ]
        variants.sort(key=lambda variant: (variant.variant_name, variant.variant_value))
        start, end = page_bounds(page, page_size)
        return copy.deepcopy(variants[start:end]), len(variants)
