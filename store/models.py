import uuid
from decimal import Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from .exceptions import InvalidTransition, ValidationError

ZERO = Decimal("0.00")


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class UserProfile(TimeStampedModel):
    ROLE_ADMIN = "admin"
    ROLE_CUSTOMER = "customer"
    ROLE_CHOICES = [
        (ROLE_ADMIN, "Admin"),
        (ROLE_CUSTOMER, "Customer"),
    ]

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile")
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_CUSTOMER)
    phone = models.CharField(max_length=20, blank=True)

    def __str__(self):
        return f"Profile for {self.user.get_full_name() or self.user.email} ({self.role})"


class Category(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "categories"

    def __str__(self):
        return self.name

    def validate(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Category name is required")
        if len(self.name) > 100:
            raise ValidationError("Category name must be at most 100 characters")


class Product(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(ZERO)])
    quantity = models.PositiveIntegerField(default=0)
    categories = models.ManyToManyField(Category, related_name="products", blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.name

    def validate(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Product name is required")
        if self.price is None or self.price < 0:
            raise ValidationError("Product price cannot be negative")
        if self.quantity is None or self.quantity < 0:
            raise ValidationError("Product quantity cannot be negative")

    def validate_for_creation(self):
        self.validate()
        if self.quantity <= 0:
            raise ValidationError("Product quantity must be greater than zero")

    def is_available(self, qty):
        return self.quantity >= qty

    def decrease_stock(self, qty):
        if not self.is_available(qty):
            raise ValidationError("Insufficient stock")
        self.quantity -= qty

    def increase_stock(self, qty):
        self.quantity += qty

    def active_variants(self):
        return self.variants.filter(deleted_at__isnull=True)


class ProductVariant(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, related_name="variants", on_delete=models.CASCADE)
    variant_name = models.CharField(max_length=100)
    variant_value = models.CharField(max_length=100)
    price_override = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    quantity = models.PositiveIntegerField(default=0)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)

    class Meta:
        ordering = ["variant_name", "variant_value"]

    def __str__(self):
        return f"{self.product.name} - {self.variant_name}: {self.variant_value}"

    def validate_for_creation(self):
        if not self.variant_name or not self.variant_name.strip():
            raise ValidationError("Variant name is required")
        if not self.variant_value or not self.variant_value.strip():
            raise ValidationError("Variant value is required")
        if self.price_override is not None and self.price_override < 0:
            raise ValidationError("Price override cannot be negative")
        if self.quantity is None or self.quantity <= 0:
            raise ValidationError("Variant quantity must be greater than zero")

    def has_price_override(self):
        return self.price_override is not None

    def get_price(self):
        if self.price_override is not None:
            return self.price_override
        return self.product.price

    def is_available(self, qty):
        return self.quantity >= qty

    def decrease_stock(self, qty):
        if qty <= 0:
            raise ValidationError("Quantity must be greater than zero")
        if not self.is_available(qty):
            raise ValidationError("Insufficient variant stock")
        self.quantity -= qty

    def increase_stock(self, qty):
        self.quantity += qty

    def soft_delete(self, now=None):
        self.deleted_at = now or timezone.now()


class Order(TimeStampedModel):
    STATUS_PENDING = "pending"
    STATUS_CANCELLED = "cancelled"
    STATUS_COMPLETED = "completed"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_COMPLETED, "Completed"),
    ]

    PAYMENT_UNPAID = "unpaid"
    PAYMENT_PAID = "paid"
    PAYMENT_FAILED = "failed"
    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_UNPAID, "Unpaid"),
        (PAYMENT_PAID, "Paid"),
        (PAYMENT_FAILED, "Failed"),
    ]

    # pending is the only state anything can leave
    TRANSITIONS = {
        STATUS_PENDING: {STATUS_COMPLETED, STATUS_CANCELLED},
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_id = models.PositiveIntegerField(db_index=True)
    total_price = models.DecimalField(max_digits=10, decimal_places=2, default=ZERO)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_UNPAID)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Order {self.pk}"

    def validate(self, items):
        if not self.customer_id or self.customer_id <= 0:
            raise ValidationError("Invalid customer ID")
        if not items:
            raise ValidationError("Order must have at least one item")

    def calculate_total(self, items):
        self.total_price = sum((item.calculate_total() for item in items), ZERO)
        return self.total_price

    def can_transition_to(self, new_status):
        return new_status in self.TRANSITIONS.get(self.status, set())

    def update_status(self, new_status, now=None):
        """Move the order through the status machine.

        Raises ``InvalidTransition`` and leaves the order untouched when the
        move is not allowed.
        """
        if not self.can_transition_to(new_status):
            raise InvalidTransition(f"Invalid status transition from {self.status} to {new_status}")
        self.status = new_status
        self.updated_at = now or timezone.now()

    def apply_payment(self, payment_status, now=None):
        """Record a payment outcome reported by the payment provider.

        A ``paid`` outcome completes the order directly; ``failed`` leaves
        the order pending.
        """
        self.payment_status = payment_status
        if payment_status == self.PAYMENT_PAID:
            self.status = self.STATUS_COMPLETED
        self.updated_at = now or timezone.now()


class OrderItem(TimeStampedModel):
    order = models.ForeignKey(Order, related_name="items", on_delete=models.CASCADE)
    product = models.ForeignKey(Product, related_name="order_items", on_delete=models.PROTECT)
    variant = models.ForeignKey(
        ProductVariant, related_name="order_items", on_delete=models.PROTECT, null=True, blank=True
    )
    quantity = models.PositiveIntegerField(default=1)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=10, decimal_places=2, default=ZERO)

    def __str__(self):
        return f"{self.quantity} x {self.product_id}"

    def validate(self):
        if self.quantity is None or self.quantity <= 0:
            raise ValidationError("Item quantity must be greater than zero")
        if self.price is None or self.price < 0:
            raise ValidationError("Item price cannot be negative")

    def calculate_total(self):
        self.total_price = self.price * self.quantity
        return self.total_price


class AuditLog(models.Model):
    ACTION_CREATE = "create"
    ACTION_UPDATE = "update"
    ACTION_DELETE = "delete"
    ACTION_UPDATE_STATUS = "update_status"
    ACTION_ASSIGN = "assign"
    ACTION_UNASSIGN = "unassign"
    ACTION_CHOICES = [
        (ACTION_CREATE, "Create"),
        (ACTION_UPDATE, "Update"),
        (ACTION_DELETE, "Delete"),
        (ACTION_UPDATE_STATUS, "Update status"),
        (ACTION_ASSIGN, "Assign"),
        (ACTION_UNASSIGN, "Unassign"),
    ]

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)
    resource_type = models.CharField(max_length=50)
    resource_id = models.CharField(max_length=64, db_index=True)
    payload_before = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    payload_after = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-timestamp"]
        indexes = [models.Index(fields=["resource_type", "resource_id"], name="store_audit_resource_idx")]

    def __str__(self):
        return f"{self.action} {self.resource_type}:{self.resource_id}"
