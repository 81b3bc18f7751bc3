import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import DatabaseError, IntegrityError, transaction

from .auth import issue_token
from .exceptions import AuthenticationFailed, NotFound, ValidationError
from .models import AuditLog, Category, Order, OrderItem, Product, ProductVariant, UserProfile
from .repositories import OrderRepository, ProductRepository, VariantRepository, page_bounds
from .serializers import serialize_category, serialize_product, serialize_variant

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 2


class AuditService:
    """Record before/after snapshots of catalog and order changes."""

    def log_change(self, user_id: Optional[int], action: str, resource_type: str, resource_id: Any,
                   before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None) -> None:
        try:
            with transaction.atomic():
                AuditLog.objects.create(
                    user_id=user_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=str(resource_id),
                    payload_before=before,
                    payload_after=after,
                )
        except DatabaseError:
            # the change itself already went through
            logger.exception("Failed to write audit log for %s %s:%s", action, resource_type, resource_id)


class AuthService:
    def _role_for(self, user) -> str:
        profile, _ = UserProfile.objects.get_or_create(user=user)
        return profile.role

    def _auth_response(self, user, role: str) -> Dict[str, Any]:
        token, expires_at = issue_token(user, role)
        return {
            "token": token,
            "user_id": user.pk,
            "email": user.email,
            "name": user.first_name,
            "role": role,
            "expires_at": expires_at,
        }

    def register(self, email: str, password: str, name: str, role: Optional[str] = None) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        role = role or UserProfile.ROLE_CUSTOMER

        if not email:
            raise ValidationError("Email is required")
        try:
            validate_email(email)
        except DjangoValidationError:
            raise ValidationError("Invalid email format")
        if len(name) < MIN_NAME_LENGTH:
            raise ValidationError("Name must be at least 2 characters")
        if role not in dict(UserProfile.ROLE_CHOICES):
            raise ValidationError("Invalid role. Must be 'customer' or 'admin'")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("Password must be at least 6 characters")

        User = get_user_model()
        if User.objects.filter(username=email).exists():
            raise ValidationError("Email already registered")

        try:
            with transaction.atomic():
                user = User.objects.create_user(username=email, email=email, password=password, first_name=name)
                UserProfile.objects.update_or_create(user=user, defaults={"role": role})
        except IntegrityError:
            raise ValidationError("Email already registered")

        logger.info("Registered user %s with role %s", user.pk, role)
        return self._auth_response(user, role)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        user = get_user_model().objects.filter(username=email).first()
        if user is None or not user.check_password(password or ""):
            logger.info("Failed login for %s", email)
            raise AuthenticationFailed("Invalid credentials")
        if not user.is_active:
            raise AuthenticationFailed("Account is inactive")
        return self._auth_response(user, self._role_for(user))


class ProductService:
    def __init__(self, products: ProductRepository, audit: Optional[AuditService] = None):
        self.products = products
        self.audit = audit

    def _audit(self, user_id, action, product_id, before=None, after=None):
        if self.audit is not None:
            self.audit.log_change(user_id, action, "product", product_id, before, after)

    def create(self, name: str, description: str, price: Decimal, quantity: int,
               user_id: Optional[int] = None) -> Product:
        product = Product(name=name, description=description or "", price=price, quantity=quantity)
        product.validate_for_creation()
        self.products.create(product)
        self._audit(user_id, AuditLog.ACTION_CREATE, product.pk, after=serialize_product(product))
        return product

    def get(self, product_id) -> Product:
        return self.products.get_by_id(product_id)

    def list(self, page: int, page_size: int, in_stock_only: bool = True):
        return self.products.list(page, page_size, in_stock_only=in_stock_only)

    def update(self, product_id, name: str, description: str, price: Decimal, quantity: int,
               user_id: Optional[int] = None) -> Product:
        product = self.products.get_by_id(product_id)
        before = serialize_product(product)
        product.name = name
        product.description = description or ""
        product.price = price
        product.quantity = quantity
        product.validate()
        self.products.update(product)
        self._audit(user_id, AuditLog.ACTION_UPDATE, product.pk, before, serialize_product(product))
        return product

    def delete(self, product_id, user_id: Optional[int] = None) -> None:
        product = self.products.get_by_id(product_id)
        before = serialize_product(product)
        self.products.delete(product_id)
        self._audit(user_id, AuditLog.ACTION_DELETE, product_id, before=before)


class VariantService:
    def __init__(self, variants: VariantRepository, products: ProductRepository,
                 audit: Optional[AuditService] = None):
        self.variants = variants
        self.products = products
        self.audit = audit

    def _audit(self, user_id, action, variant_id, before=None, after=None):
        if self.audit is not None:
            self.audit.log_change(user_id, action, "product_variant", variant_id, before, after)

    def create(self, product_id, variant_name: str, variant_value: str, price_override: Optional[Decimal],
               quantity: int, user_id: Optional[int] = None) -> ProductVariant:
        product = self.products.get_by_id(product_id)
        variant = ProductVariant(
            product=product,
            variant_name=(variant_name or "").strip(),
            variant_value=(variant_value or "").strip(),
            price_override=price_override,
            quantity=quantity,
        )
        variant.validate_for_creation()
        self.variants.create(variant)
        self._audit(user_id, AuditLog.ACTION_CREATE, variant.pk, after=serialize_variant(variant))
        return variant

    def get(self, variant_id) -> ProductVariant:
        return self.variants.get_by_id(variant_id)

    def list_by_product(self, product_id, page: int, page_size: int):
        self.products.get_by_id(product_id)
        return self.variants.list_by_product(product_id, page, page_size)

    def update(self, variant_id, variant_name: str, variant_value: str, price_override: Optional[Decimal],
               quantity: int, user_id: Optional[int] = None) -> ProductVariant:
        variant = self.variants.get_by_id(variant_id)
        before = serialize_variant(variant)
        variant.variant_name = (variant_name or "").strip()
        variant.variant_value = (variant_value or "").strip()
        variant.price_override = price_override
        variant.quantity = quantity
        variant.validate_for_creation()
        self.variants.update(variant)
        self._audit(user_id, AuditLog.ACTION_UPDATE, variant.pk, before, serialize_variant(variant))
        return variant

    def delete(self, variant_id, user_id: Optional[int] = None) -> None:
        variant = self.variants.get_by_id(variant_id)
        self.variants.delete(variant_id)
        self._audit(user_id, AuditLog.ACTION_DELETE, variant_id, before=serialize_variant(variant))


class CategoryService:
    def __init__(self, audit: Optional[AuditService] = None):
        self.audit = audit

    def _audit(self, user_id, action, resource_type, resource_id, before=None, after=None):
        if self.audit is not None:
            self.audit.log_change(user_id, action, resource_type, resource_id, before, after)

    def create(self, name: str, user_id: Optional[int] = None) -> Category:
        category = Category(name=(name or "").strip())
        category.validate()
        if Category.objects.filter(name__iexact=category.name).exists():
            raise ValidationError("Category already exists")
        try:
            with transaction.atomic():
                category.save(force_insert=True)
        except IntegrityError:
            raise ValidationError("Category already exists")
        self._audit(user_id, AuditLog.ACTION_CREATE, "category", category.pk, after=serialize_category(category))
        return category

    def get(self, category_id) -> Category:
        try:
            return Category.objects.get(pk=category_id)
        except Category.DoesNotExist:
            raise NotFound("Category not found")

    def get_by_name(self, name: str) -> Category:
        try:
            return Category.objects.get(name__iexact=(name or "").strip())
        except Category.DoesNotExist:
            raise NotFound("Category not found")

    def list(self, page: int, page_size: int):
        queryset = Category.objects.order_by("name")
        start, end = page_bounds(page, page_size)
        return list(queryset[start:end]), queryset.count()

    def update(self, category_id, name: str, user_id: Optional[int] = None) -> Category:
        category = self.get(category_id)
        before = serialize_category(category)
        category.name = (name or "").strip()
        category.validate()
        if Category.objects.filter(name__iexact=category.name).exclude(pk=category.pk).exists():
            raise ValidationError("Category already exists")
        category.save(update_fields=["name", "updated_at"])
        self._audit(user_id, AuditLog.ACTION_UPDATE, "category", category.pk, before, serialize_category(category))
        return category

    def delete(self, category_id, user_id: Optional[int] = None) -> None:
        category = self.get(category_id)
        before = serialize_category(category)
        category.delete()
        self._audit(user_id, AuditLog.ACTION_DELETE, "category", category_id, before=before)

    def _product(self, product_id) -> Product:
        try:
            return Product.objects.get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFound("Product not found")

    def assign_to_product(self, product_id, category_id, user_id: Optional[int] = None) -> None:
        product = self._product(product_id)
        category = self.get(category_id)
        product.categories.add(category)
        self._audit(user_id, AuditLog.ACTION_ASSIGN, "product", product.pk,
                    after={"category_id": str(category.pk)})

    def remove_from_product(self, product_id, category_id, user_id: Optional[int] = None) -> None:
        product = self._product(product_id)
        category = self.get(category_id)
        if not product.categories.filter(pk=category.pk).exists():
            raise NotFound("Category is not assigned to this product")
        product.categories.remove(category)
        self._audit(user_id, AuditLog.ACTION_UNASSIGN, "product", product.pk,
                    before={"category_id": str(category.pk)})

    def product_categories(self, product_id) -> List[Category]:
        return list(self._product(product_id).categories.order_by("name"))


class OrderService:
    def __init__(self, orders: OrderRepository, products: ProductRepository,
                 variants: Optional[VariantRepository] = None, audit: Optional[AuditService] = None):
        self.orders = orders
        self.products = products
        self.variants = variants
        self.audit = audit

    def create(self, customer_id: int, items: Iterable[Dict[str, Any]]) -> Order:
        """Create a pending, unpaid order and reserve stock for every line.

        Each entry of ``items`` has ``product_id``, ``quantity`` and an
        optional ``variant_id``; a variant's effective price wins over the
        product price. Product and variant rows are read with row locks, so
        callers must run this inside ``transaction.atomic``; that also makes
        the stock updates all-or-nothing.
        """
        items = list(items)
        order = Order(customer_id=customer_id)
        order.validate(items)

        # one instance per product/variant so repeated lines share stock
        products: Dict[Any, Product] = {}
        variants: Dict[Any, ProductVariant] = {}
        order_items = []
        reserved_products = set()
        for entry in items:
            product_id = entry["product_id"]
            if product_id not in products:
                products[product_id] = self.products.get_by_id(product_id, for_update=True)
            product = products[product_id]

            variant = None
            variant_id = entry.get("variant_id")
            if variant_id:
                if variant_id not in variants:
                    variants[variant_id] = self._variant_for(product, variant_id)
                variant = variants[variant_id]

            item = OrderItem(
                product=product,
                variant=variant,
                quantity=entry["quantity"],
                price=variant.get_price() if variant is not None else product.price,
            )
            item.validate()
            stock = variant if variant is not None else product
            if not stock.is_available(item.quantity):
                raise ValidationError(f"Insufficient stock for product: {product.name}")
            stock.decrease_stock(item.quantity)
            if variant is None:
                reserved_products.add(product_id)
            order_items.append(item)

        for variant in variants.values():
            self.variants.update(variant)
        for product_id in reserved_products:
            self.products.update(products[product_id])

        order.calculate_total(order_items)
        self.orders.create(order, order_items)
        logger.info("Created order %s for customer %s (%s items, total %s)",
                    order.pk, customer_id, len(order_items), order.total_price)
        return order

    def _variant_for(self, product: Product, variant_id) -> ProductVariant:
        if self.variants is None:
            raise ValidationError("Product variants are not supported")
        variant = self.variants.get_by_id(variant_id, for_update=True)
        if variant.product_id != product.pk:
            raise ValidationError(f"Variant {variant_id} does not belong to product: {product.name}")
        return variant

    def get(self, order_id) -> Order:
        return self.orders.get_by_id(order_id)

    def items(self, order_id) -> List[OrderItem]:
        return self.orders.get_items(order_id)

    def list(self, page: int, page_size: int, status: Optional[str] = None,
             payment_status: Optional[str] = None, customer_id: Optional[int] = None):
        if status and status not in dict(Order.STATUS_CHOICES):
            raise ValidationError("Invalid status filter")
        if payment_status and payment_status not in dict(Order.PAYMENT_STATUS_CHOICES):
            raise ValidationError("Invalid payment_status filter")
        return self.orders.list(page, page_size, status=status, payment_status=payment_status,
                                customer_id=customer_id)

    def update_status(self, order_id, new_status: str, user_id: Optional[int] = None) -> Order:
        if new_status not in dict(Order.STATUS_CHOICES):
            raise ValidationError("Invalid order status")
        order = self.orders.get_by_id(order_id)
        before_status = order.status
        order.update_status(new_status)
        self.orders.update(order, expected_status=before_status)
        logger.info("Order %s status changed: %s -> %s", order.pk, before_status, new_status)
        if self.audit is not None:
            self.audit.log_change(user_id, AuditLog.ACTION_UPDATE_STATUS, "order", order.pk,
                                  {"status": before_status}, {"status": order.status})
        return order
