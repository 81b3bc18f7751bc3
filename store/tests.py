import json
import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from shopapi.security import require_secret
from store.auth import decode_token, issue_token
from store.exceptions import (
    AuthenticationFailed,
    InvalidState,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ValidationError,
)
from store.models import AuditLog, Category, Order, OrderItem, Product, ProductVariant, UserProfile
from store.repositories import (
    DjangoOrderRepository,
    InMemoryOrderRepository,
    InMemoryProductRepository,
    InMemoryVariantRepository,
)
from store.services import AuthService, OrderService
from store.utils import normalize_page, parse_decimal

User = get_user_model()


class OrderStatusTests(SimpleTestCase):
    def test_pending_can_complete_or_cancel(self):
        for status in (Order.STATUS_COMPLETED, Order.STATUS_CANCELLED):
            order = Order(customer_id=1)
            order.update_status(status)
            self.assertEqual(order.status, status)
            self.assertIsNotNone(order.updated_at)

    def test_terminal_states_are_final(self):
        cases = [
            (Order.STATUS_PENDING, Order.STATUS_PENDING),
            (Order.STATUS_COMPLETED, Order.STATUS_CANCELLED),
            (Order.STATUS_COMPLETED, Order.STATUS_PENDING),
            (Order.STATUS_CANCELLED, Order.STATUS_COMPLETED),
            (Order.STATUS_CANCELLED, Order.STATUS_CANCELLED),
        ]
        for current, target in cases:
            with self.subTest(current=current, target=target):
                order = Order(customer_id=1, status=current)
                with self.assertRaises(InvalidTransition) as ctx:
                    order.update_status(target)
                self.assertEqual(order.status, current)
                self.assertEqual(str(ctx.exception), f"Invalid status transition from {current} to {target}")

    def test_payment_outcomes(self):
        order = Order(customer_id=1)
        order.apply_payment(Order.PAYMENT_FAILED)
        self.assertEqual((order.status, order.payment_status), (Order.STATUS_PENDING, Order.PAYMENT_FAILED))
        order.apply_payment(Order.PAYMENT_PAID)
        self.assertEqual((order.status, order.payment_status), (Order.STATUS_COMPLETED, Order.PAYMENT_PAID))


class CatalogModelTests(SimpleTestCase):
    def test_product_validation(self):
        with self.assertRaisesMessage(ValidationError, "Product name is required"):
            Product(name=" ", price=Decimal("1.00"), quantity=1).validate_for_creation()
        with self.assertRaisesMessage(ValidationError, "Product price cannot be negative"):
            Product(name="Pen", price=Decimal("-1.00"), quantity=1).validate_for_creation()
        with self.assertRaisesMessage(ValidationError, "Product quantity must be greater than zero"):
            Product(name="Pen", price=Decimal("1.00"), quantity=0).validate_for_creation()
        # updates may bring stock down to zero
        Product(name="Pen", price=Decimal("1.00"), quantity=0).validate()

    def test_product_stock(self):
        product = Product(name="Pen", price=Decimal("1.00"), quantity=3)
        product.decrease_stock(2)
        self.assertEqual(product.quantity, 1)
        with self.assertRaisesMessage(ValidationError, "Insufficient stock"):
            product.decrease_stock(2)
        product.increase_stock(4)
        self.assertEqual(product.quantity, 5)

    def test_variant_price(self):
        product = Product(name="Shirt", price=Decimal("20.00"), quantity=1)
        variant = ProductVariant(product=product, variant_name="Size", variant_value="L", quantity=2)
        self.assertFalse(variant.has_price_override())
        self.assertEqual(variant.get_price(), Decimal("20.00"))
        variant.price_override = Decimal("25.50")
        self.assertTrue(variant.has_price_override())
        self.assertEqual(variant.get_price(), Decimal("25.50"))

    def test_variant_stock(self):
        variant = ProductVariant(variant_name="Size", variant_value="L", quantity=2)
        with self.assertRaisesMessage(ValidationError, "Quantity must be greater than zero"):
            variant.decrease_stock(0)
        with self.assertRaisesMessage(ValidationError, "Insufficient variant stock"):
            variant.decrease_stock(3)
        variant.decrease_stock(2)
        self.assertEqual(variant.quantity, 0)

    def test_order_item_total(self):
        item = OrderItem(quantity=3, price=Decimal("2.50"))
        self.assertEqual(item.calculate_total(), Decimal("7.50"))


class PagingTests(SimpleTestCase):
    def test_normalize_page(self):
        self.assertEqual(normalize_page(0, 10), (1, 10))
        self.assertEqual(normalize_page(3, 0), (3, 10))
        self.assertEqual(normalize_page(2, 101), (2, 10))
        self.assertEqual(normalize_page(2, 100), (2, 100))

    def test_parse_decimal_keeps_cents(self):
        self.assertEqual(parse_decimal(19.99, "price"), Decimal("19.99"))
        with self.assertRaises(ValidationError):
            parse_decimal("abc", "price")


class OrderServiceTests(SimpleTestCase):
    def setUp(self):
        self.orders = InMemoryOrderRepository()
        self.products = InMemoryProductRepository()
        self.variants = InMemoryVariantRepository()
        self.service = OrderService(self.orders, self.products, self.variants)

        self.pen = Product(name="Pen", price=Decimal("1.50"), quantity=10)
        self.shirt = Product(name="Shirt", price=Decimal("20.00"), quantity=5)
        self.products.create(self.pen)
        self.products.create(self.shirt)
        self.large = ProductVariant(
            product=self.shirt, variant_name="Size", variant_value="L",
            price_override=Decimal("25.00"), quantity=2,
        )
        self.variants.create(self.large)

    def test_create_reserves_stock_and_totals(self):
        order = self.service.create(7, [
            {"product_id": self.pen.pk, "quantity": 4},
            {"product_id": self.shirt.pk, "variant_id": self.large.pk, "quantity": 1},
        ])

        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.payment_status, Order.PAYMENT_UNPAID)
        self.assertEqual(order.total_price, Decimal("31.00"))
        self.assertEqual(self.products.get_by_id(self.pen.pk).quantity, 6)
        # variant lines draw from the variant, not the product
        self.assertEqual(self.products.get_by_id(self.shirt.pk).quantity, 5)
        self.assertEqual(self.variants.get_by_id(self.large.pk).quantity, 1)

        items = self.service.items(order.pk)
        self.assertEqual([item.price for item in items], [Decimal("1.50"), Decimal("25.00")])
        self.assertEqual(self.service.get(order.pk).customer_id, 7)

    def test_repeated_lines_share_stock(self):
        with self.assertRaisesMessage(ValidationError, "Insufficient stock for product: Pen"):
            self.service.create(7, [
                {"product_id": self.pen.pk, "quantity": 6},
                {"product_id": self.pen.pk, "quantity": 6},
            ])
        self.assertEqual(self.products.get_by_id(self.pen.pk).quantity, 10)

    def test_insufficient_variant_stock(self):
        with self.assertRaisesMessage(ValidationError, "Insufficient stock for product: Shirt"):
            self.service.create(7, [{"product_id": self.shirt.pk, "variant_id": self.large.pk, "quantity": 3}])

    def test_variant_must_belong_to_product(self):
        with self.assertRaises(ValidationError):
            self.service.create(7, [{"product_id": self.pen.pk, "variant_id": self.large.pk, "quantity": 1}])

    def test_invalid_orders(self):
        with self.assertRaisesMessage(ValidationError, "Invalid customer ID"):
            self.service.create(0, [{"product_id": self.pen.pk, "quantity": 1}])
        with self.assertRaisesMessage(ValidationError, "Order must have at least one item"):
            self.service.create(7, [])
        with self.assertRaisesMessage(ValidationError, "Item quantity must be greater than zero"):
            self.service.create(7, [{"product_id": self.pen.pk, "quantity": 0}])
        with self.assertRaises(NotFound):
            self.service.create(7, [{"product_id": uuid.uuid4(), "quantity": 1}])
        self.assertEqual(self.orders.list(1, 10)[1], 0)

    def test_list_filters_and_pages(self):
        first = self.service.create(7, [{"product_id": self.pen.pk, "quantity": 1}])
        self.service.create(7, [{"product_id": self.pen.pk, "quantity": 1}])
        self.service.create(8, [{"product_id": self.pen.pk, "quantity": 1}])
        self.service.update_status(first.pk, Order.STATUS_CANCELLED)

        orders, total = self.service.list(1, 2)
        self.assertEqual((len(orders), total), (2, 3))
        orders, total = self.service.list(2, 2)
        self.assertEqual((len(orders), total), (1, 3))

        orders, total = self.service.list(1, 10, customer_id=7)
        self.assertEqual(total, 2)
        orders, total = self.service.list(1, 10, status=Order.STATUS_CANCELLED)
        self.assertEqual([order.pk for order in orders], [first.pk])
        with self.assertRaises(ValidationError):
            self.service.list(1, 10, status="shipped")

    def test_update_status(self):
        order = self.service.create(7, [{"product_id": self.pen.pk, "quantity": 1}])

        updated = self.service.update_status(order.pk, Order.STATUS_COMPLETED)
        self.assertEqual(updated.status, Order.STATUS_COMPLETED)
        self.assertEqual(self.service.get(order.pk).status, Order.STATUS_COMPLETED)

        with self.assertRaises(InvalidTransition):
            self.service.update_status(order.pk, Order.STATUS_CANCELLED)
        with self.assertRaisesMessage(ValidationError, "Invalid order status"):
            self.service.update_status(order.pk, "shipped")
        with self.assertRaises(NotFound):
            self.service.update_status(uuid.uuid4(), Order.STATUS_COMPLETED)

    def test_update_status_does_not_overwrite_concurrent_change(self):
        order = self.service.create(7, [{"product_id": self.pen.pk, "quantity": 1}])
        stale = self.orders.get_by_id(order.pk)
        self.service.update_status(order.pk, Order.STATUS_COMPLETED)

        with patch.object(self.orders, "get_by_id", return_value=stale):
            with self.assertRaises(InvalidState):
                self.service.update_status(order.pk, Order.STATUS_CANCELLED)

        self.assertEqual(self.service.get(order.pk).status, Order.STATUS_COMPLETED)


class AuthServiceTests(TestCase):
    def test_register_defaults_to_customer(self):
        response = AuthService().register(email="Jane@Example.com", password="secret1", name="Jane")

        self.assertEqual(response["email"], "jane@example.com")
        self.assertEqual(response["role"], UserProfile.ROLE_CUSTOMER)
        claims = decode_token(response["token"])
        self.assertEqual(claims["user_id"], response["user_id"])
        self.assertEqual(claims["role"], UserProfile.ROLE_CUSTOMER)
        self.assertEqual(claims["iss"], "shopapi")
        self.assertEqual(User.objects.get(pk=response["user_id"]).profile.role, UserProfile.ROLE_CUSTOMER)

    def test_register_validation(self):
        service = AuthService()
        cases = [
            (dict(email="", password="secret1", name="Jane"), "Email is required"),
            (dict(email="nope", password="secret1", name="Jane"), "Invalid email format"),
            (dict(email="a@b.com", password="secret1", name="J"), "Name must be at least 2 characters"),
            (dict(email="a@b.com", password="secret1", name="Jane", role="owner"),
             "Invalid role. Must be 'customer' or 'admin'"),
            (dict(email="a@b.com", password="123", name="Jane"), "Password must be at least 6 characters"),
        ]
        for kwargs, message in cases:
            with self.subTest(message=message):
                with self.assertRaisesMessage(ValidationError, message):
                    service.register(**kwargs)

        service.register(email="a@b.com", password="secret1", name="Jane")
        with self.assertRaisesMessage(ValidationError, "Email already registered"):
            service.register(email="A@B.com", password="secret1", name="Jane")

    def test_login(self):
        service = AuthService()
        service.register(email="boss@example.com", password="secret1", name="Boss", role="admin")

        response = service.login(email="boss@example.com", password="secret1")
        self.assertEqual(response["role"], UserProfile.ROLE_ADMIN)

        with self.assertRaisesMessage(AuthenticationFailed, "Invalid credentials"):
            service.login(email="boss@example.com", password="wrong")
        with self.assertRaisesMessage(AuthenticationFailed, "Invalid credentials"):
            service.login(email="ghost@example.com", password="secret1")

        User.objects.filter(username="boss@example.com").update(is_active=False)
        with self.assertRaisesMessage(AuthenticationFailed, "Account is inactive"):
            service.login(email="boss@example.com", password="secret1")

    def test_tokens_from_other_secrets_are_rejected(self):
        user = User.objects.create_user(username="x@example.com", email="x@example.com", password="secret1")
        with override_settings(JWT_SECRET="another-secret"):
            token, _ = issue_token(user, UserProfile.ROLE_ADMIN)
        with self.assertRaises(AuthenticationFailed):
            decode_token(token)


class ApiTestCase(TestCase):
    def setUp(self):
        self.client = Client()
        self.admin = User.objects.create_user(username="admin@example.com", email="admin@example.com", password="secret1")
        UserProfile.objects.filter(user=self.admin).update(role=UserProfile.ROLE_ADMIN)
        self.customer = User.objects.create_user(username="buyer@example.com", email="buyer@example.com", password="secret1")
        self.other = User.objects.create_user(username="other@example.com", email="other@example.com", password="secret1")

    def _headers(self, user, role=UserProfile.ROLE_CUSTOMER):
        token, _ = issue_token(user, role)
        return {"HTTP_AUTHORIZATION": f"Bearer {token}"}

    def as_admin(self):
        return self._headers(self.admin, UserProfile.ROLE_ADMIN)

    def as_customer(self, user=None):
        return self._headers(user or self.customer)

    def _send(self, method, url, data=None, headers=None):
        body = json.dumps(data) if data is not None else ""
        return getattr(self.client, method)(url, data=body, content_type="application/json", **(headers or {}))

    def _create_product(self, name="Laptop", price="999.99", quantity=5):
        return Product.objects.create(name=name, price=Decimal(price), quantity=quantity)


class AuthViewTests(ApiTestCase):
    def test_register_and_login(self):
        response = self._send("post", reverse("store:register"),
                              {"email": "new@example.com", "password": "secret1", "name": "Newbie"})
        self.assertEqual(response.status_code, 201)
        self.assertIn("token", response.json())

        response = self._send("post", reverse("store:login"), {"email": "new@example.com", "password": "secret1"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], UserProfile.ROLE_CUSTOMER)

        response = self._send("post", reverse("store:login"), {"email": "new@example.com", "password": "nope"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Invalid credentials"})

    def test_admin_sign_up_needs_admin_token(self):
        payload = {"email": "boss@example.com", "password": "secret1", "name": "Boss", "role": "admin"}

        response = self._send("post", reverse("store:register"), payload)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Only authenticated admin users can create admin accounts"})

        response = self._send("post", reverse("store:register"), payload, self.as_customer())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Only admin users can create admin accounts"})
        self.assertFalse(User.objects.filter(username="boss@example.com").exists())

        response = self._send("post", reverse("store:register"), payload, self.as_admin())
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], UserProfile.ROLE_ADMIN)
        self.assertEqual(User.objects.get(username="boss@example.com").profile.role, UserProfile.ROLE_ADMIN)

    def test_customer_sign_up_stays_public(self):
        response = self._send("post", reverse("store:register"), {
            "email": "shopper@example.com", "password": "secret1", "name": "Shopper", "role": "customer",
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], UserProfile.ROLE_CUSTOMER)

    def test_register_rejects_bad_body(self):
        response = self.client.post(reverse("store:register"), data="[1, 2", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid request body"})

    def test_authorization_header_checks(self):
        url = reverse("store:products")
        self.assertEqual(self.client.get(url).json(), {"error": "Missing authorization header"})
        response = self.client.get(url, HTTP_AUTHORIZATION="Token abc")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Invalid authorization header format"})
        response = self.client.get(url, HTTP_AUTHORIZATION="Bearer not-a-jwt")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Invalid or expired token"})


class ProductViewTests(ApiTestCase):
    def test_admin_manages_products(self):
        response = self._send("post", reverse("store:products"),
                              {"name": "Laptop", "price": 999.99, "quantity": 5}, self.as_admin())
        self.assertEqual(response.status_code, 201)
        product_id = response.json()["id"]
        self.assertEqual(response.json()["price"], "999.99")

        url = reverse("store:product-detail", args=[product_id])
        response = self._send("put", url, {"name": "Laptop Pro", "price": "1299.00", "quantity": 3}, self.as_admin())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(Product.objects.get(pk=product_id).name, "Laptop Pro")

        response = self._send("delete", url, headers=self.as_admin())
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Product.objects.filter(pk=product_id).exists())

        actions = list(AuditLog.objects.filter(resource_type="product", resource_id=product_id)
                       .order_by("id").values_list("action", flat=True))
        self.assertEqual(actions, [AuditLog.ACTION_CREATE, AuditLog.ACTION_UPDATE, AuditLog.ACTION_DELETE])
        update = AuditLog.objects.get(resource_id=product_id, action=AuditLog.ACTION_UPDATE)
        self.assertEqual(update.user_id, self.admin.pk)
        self.assertEqual(update.payload_before["name"], "Laptop")
        self.assertEqual(update.payload_after["name"], "Laptop Pro")

    def test_customer_cannot_write_catalog(self):
        response = self._send("post", reverse("store:products"),
                              {"name": "Laptop", "price": 1, "quantity": 1}, self.as_customer())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Forbidden: insufficient permissions for this action"})
        self.assertFalse(Product.objects.exists())

    def test_create_validation(self):
        response = self._send("post", reverse("store:products"),
                              {"name": "Laptop", "price": 1, "quantity": 0}, self.as_admin())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Product quantity must be greater than zero"})

    def test_list_hides_out_of_stock_by_default(self):
        self._create_product("Laptop")
        self._create_product("Mouse", quantity=0)

        response = self.client.get(reverse("store:products"), **self.as_customer())
        self.assertEqual(response.json()["total"], 1)
        response = self.client.get(reverse("store:products") + "?in_stock_only=false&page_size=500",
                                   **self.as_customer())
        body = response.json()
        self.assertEqual((body["total"], body["page"], body["page_size"]), (2, 1, 10))

    def test_detail(self):
        product = self._create_product()
        ProductVariant.objects.create(product=product, variant_name="RAM", variant_value="16GB", quantity=2)
        ProductVariant.objects.create(product=product, variant_name="RAM", variant_value="32GB", quantity=1,
                                      price_override=Decimal("1199.00"))

        response = self.client.get(reverse("store:product-detail", args=[product.pk]), **self.as_customer())
        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(body["has_variants"])
        self.assertEqual(body["total_variant_stock"], 3)
        self.assertEqual(len(body["variants"]), 2)

        response = self.client.get(reverse("store:product-detail", args=[uuid.uuid4()]), **self.as_customer())
        self.assertEqual(response.status_code, 404)
        response = self.client.get(reverse("store:product-detail", args=["abc"]), **self.as_customer())
        self.assertEqual(response.status_code, 400)

    def test_product_with_orders_cannot_be_deleted(self):
        product = self._create_product()
        order = Order.objects.create(customer_id=self.customer.pk)
        OrderItem.objects.create(order=order, product=product, quantity=1, price=product.price)

        response = self._send("delete", reverse("store:product-detail", args=[product.pk]), headers=self.as_admin())
        self.assertEqual(response.status_code, 409)
        self.assertTrue(Product.objects.filter(pk=product.pk).exists())


class VariantViewTests(ApiTestCase):
    def test_variant_lifecycle(self):
        product = self._create_product()
        response = self._send("post", reverse("store:variants"), {
            "product_id": str(product.pk), "variant_name": "Color", "variant_value": "Red", "quantity": 3,
        }, self.as_admin())
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["price"], "999.99")
        self.assertFalse(body["has_override"])
        variant_id = body["id"]

        url = reverse("store:variant-detail", args=[variant_id])
        response = self._send("put", url, {
            "variant_name": "Color", "variant_value": "Blue", "price_override": "950.00", "quantity": 3,
        }, self.as_admin())
        self.assertEqual(response.json()["price"], "950.00")

        response = self._send("delete", url, headers=self.as_admin())
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(ProductVariant.objects.get(pk=variant_id).deleted_at)
        self.assertEqual(self.client.get(url, **self.as_customer()).status_code, 404)

        response = self.client.get(reverse("store:variants") + f"?product_id={product.pk}", **self.as_customer())
        self.assertEqual(response.json()["total"], 0)

    def test_list_requires_existing_product(self):
        response = self.client.get(reverse("store:variants") + f"?product_id={uuid.uuid4()}", **self.as_customer())
        self.assertEqual(response.status_code, 404)
        response = self.client.get(reverse("store:variants"), **self.as_customer())
        self.assertEqual(response.status_code, 400)


class CategoryViewTests(ApiTestCase):
    def test_categories_and_assignment(self):
        response = self._send("post", reverse("store:categories"), {"name": "Electronics"}, self.as_admin())
        self.assertEqual(response.status_code, 201)
        category_id = response.json()["id"]
        response = self._send("post", reverse("store:categories"), {"name": "electronics"}, self.as_admin())
        self.assertEqual(response.json(), {"error": "Category already exists"})

        product = self._create_product()
        url = reverse("store:product-categories", args=[product.pk])
        response = self._send("post", url, {"category_id": category_id}, self.as_admin())
        self.assertEqual(response.status_code, 201)
        response = self.client.get(url, **self.as_customer())
        self.assertEqual([c["name"] for c in response.json()["data"]], ["Electronics"])

        remove_url = reverse("store:product-category-remove", args=[product.pk, category_id])
        self.assertEqual(self._send("delete", remove_url, headers=self.as_admin()).status_code, 200)
        response = self._send("delete", remove_url, headers=self.as_admin())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Category is not assigned to this product"})

        self.assertEqual(
            AuditLog.objects.filter(resource_type="product", action=AuditLog.ACTION_ASSIGN).count(), 1
        )

    def test_lookup_by_name(self):
        category = Category.objects.create(name="Garden")
        url = reverse("store:categories")

        response = self.client.get(url + "?name=garden", **self.as_customer())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["id"], str(category.pk))

        response = self.client.get(url + "?name=Kitchen", **self.as_customer())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Category not found"})

    def test_rename_and_delete(self):
        category = Category.objects.create(name="Books")
        url = reverse("store:category-detail", args=[category.pk])

        response = self._send("put", url, {"name": "Novels"}, self.as_admin())
        self.assertEqual(response.json()["name"], "Novels")
        self.assertEqual(self._send("delete", url, headers=self.as_admin()).status_code, 200)
        self.assertEqual(self.client.get(url, **self.as_customer()).status_code, 404)


class OrderViewTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.product = self._create_product(price="10.00", quantity=5)

    def _place(self, user=None, **data):
        data.setdefault("products", [{"product_id": str(self.product.pk), "quantity": 2}])
        return self._send("post", reverse("store:orders"), data, self.as_customer(user))

    def test_customer_places_order(self):
        response = self._place()

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["customer_id"], self.customer.pk)
        self.assertEqual(body["total_price"], "20.00")
        self.assertEqual(body["status"], Order.STATUS_PENDING)
        self.assertEqual(body["payment_status"], Order.PAYMENT_UNPAID)
        self.assertEqual(body["products"][0]["subtotal"], "20.00")
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 3)

    def test_insufficient_stock(self):
        response = self._place(products=[{"product_id": str(self.product.pk), "quantity": 6}])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Insufficient stock for product: Laptop"})
        self.assertFalse(Order.objects.exists())

    def test_failed_order_rolls_back_stock(self):
        with patch("store.repositories.OrderItem.objects.bulk_create", side_effect=ValidationError("boom")):
            response = self._place()
        self.assertEqual(response.status_code, 400)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 5)

    def test_stock_rows_are_locked_while_ordering(self):
        variant = ProductVariant.objects.create(product=self.product, variant_name="Size", variant_value="L", quantity=2)
        with patch.object(Product.objects, "select_for_update", wraps=Product.objects.select_for_update) as product_lock, \
                patch.object(ProductVariant.objects, "select_for_update",
                             wraps=ProductVariant.objects.select_for_update) as variant_lock:
            response = self._place(products=[
                {"product_id": str(self.product.pk), "variant_id": str(variant.pk), "quantity": 1},
            ])

        self.assertEqual(response.status_code, 201)
        product_lock.assert_called_once_with()
        variant_lock.assert_called_once_with()
        variant.refresh_from_db()
        self.assertEqual(variant.quantity, 1)

    def test_customer_cannot_order_for_someone_else(self):
        response = self._place(customer_id=self.other.pk)
        self.assertEqual(response.status_code, 403)

        response = self._send("post", reverse("store:orders"), {
            "customer_id": self.other.pk,
            "products": [{"product_id": str(self.product.pk), "quantity": 1}],
        }, self.as_admin())
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["customer_id"], self.other.pk)

    def test_customers_only_see_their_orders(self):
        mine = self._place().json()["id"]
        theirs = self._place(user=self.other).json()["id"]

        response = self.client.get(reverse("store:orders"), **self.as_customer())
        self.assertEqual([order["id"] for order in response.json()["data"]], [mine])
        response = self.client.get(reverse("store:orders"), **self.as_admin())
        self.assertEqual(response.json()["total"], 2)

        response = self.client.get(reverse("store:order-detail", args=[theirs]), **self.as_customer())
        self.assertEqual(response.status_code, 404)
        response = self.client.get(reverse("store:order-detail", args=[theirs]), **self.as_admin())
        self.assertEqual(response.status_code, 200)

    def test_status_updates(self):
        order_id = self._place().json()["id"]
        url = reverse("store:order-status", args=[order_id])

        response = self._send("put", url, {"status": "completed"}, self.as_customer())
        self.assertEqual(response.status_code, 403)

        response = self._send("put", url, {"status": "cancelled"}, self.as_admin())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], Order.STATUS_CANCELLED)

        response = self._send("put", url, {"status": "completed"}, self.as_admin())
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json(), {"error": "Invalid status transition from cancelled to completed"})

        response = self._send("put", url, {"status": "shipped"}, self.as_admin())
        self.assertEqual(response.status_code, 400)

        audit = AuditLog.objects.get(resource_type="order", action=AuditLog.ACTION_UPDATE_STATUS)
        self.assertEqual(audit.payload_before, {"status": "pending"})
        self.assertEqual(audit.payload_after, {"status": "cancelled"})


class LoadDemoCommandTests(TestCase):
    def test_loaddemo_is_idempotent(self):
        call_command("loaddemo", stdout=StringIO())
        out = StringIO()
        call_command("loaddemo", stdout=out)

        self.assertIn("Demo product already exists.", out.getvalue())
        product = Product.objects.get(name="Demo Laptop")
        self.assertEqual(product.active_variants().count(), 1)
        self.assertEqual([c.name for c in product.categories.all()], ["Electronics"])
        admin = User.objects.get(username="admin@example.com")
        self.assertEqual(admin.profile.role, UserProfile.ROLE_ADMIN)


class OrderRepositoryTests(TestCase):
    def test_guarded_update_refuses_stale_status(self):
        order = Order.objects.create(customer_id=1)
        repo = DjangoOrderRepository()
        stale = repo.get_by_id(order.pk)
        Order.objects.filter(pk=order.pk).update(status=Order.STATUS_COMPLETED, payment_status=Order.PAYMENT_PAID)

        stale.apply_payment(Order.PAYMENT_FAILED)
        with self.assertRaisesMessage(InvalidState, "order is not pending (current status: completed)"):
            repo.update(stale, expected_status=Order.STATUS_PENDING)

        order.refresh_from_db()
        self.assertEqual((order.status, order.payment_status), (Order.STATUS_COMPLETED, Order.PAYMENT_PAID))

    def test_guarded_update(self):
        order = Order.objects.create(customer_id=1)
        repo = DjangoOrderRepository()
        order.apply_payment(Order.PAYMENT_PAID)
        repo.update(order, expected_status=Order.STATUS_PENDING)

        order.refresh_from_db()
        self.assertEqual((order.status, order.payment_status), (Order.STATUS_COMPLETED, Order.PAYMENT_PAID))

        missing = Order(customer_id=1)
        with self.assertRaises(PersistenceError):
            repo.update(missing, expected_status=Order.STATUS_PENDING)


class SecretSettingsTests(SimpleTestCase):
    def test_default_secret_refused_without_debug(self):
        for value in ("", "change-me"):
            with self.subTest(value=value):
                with self.assertRaises(ImproperlyConfigured):
                    require_secret("JWT_SECRET", value, debug=False)

    def test_default_secret_allowed_in_debug(self):
        self.assertEqual(require_secret("JWT_SECRET", "change-me", debug=True), "change-me")
        self.assertEqual(require_secret("JWT_SECRET", "s3cr3t-value", debug=False), "s3cr3t-value")
