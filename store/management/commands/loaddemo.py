from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from store.auth import issue_token
from store.models import Category, Product, ProductVariant, UserProfile


class Command(BaseCommand):
    help = "Load a demo catalog and an admin user for quick testing."

    def handle(self, *args, **options):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username="admin@example.com",
            defaults={"email": "admin@example.com", "first_name": "Admin", "is_staff": True, "is_superuser": True},
        )
        if created:
            user.set_password("adminpass")
            user.save()
            self.stdout.write(self.style.SUCCESS("Created admin user admin@example.com / adminpass"))
        else:
            self.stdout.write("Admin user already exists.")
        UserProfile.objects.update_or_create(user=user, defaults={"role": UserProfile.ROLE_ADMIN})

        category, _ = Category.objects.get_or_create(name="Electronics")
        product, created = Product.objects.get_or_create(
            name="Demo Laptop",
            defaults={
                "description": "Sample product used to walk through orders and payment webhooks.",
                "price": Decimal("999.99"),
                "quantity": 25,
            },
        )
        product.categories.add(category)
        if created:
            ProductVariant.objects.create(
                product=product, variant_name="Memory", variant_value="32GB",
                price_override=Decimal("1199.99"), quantity=10,
            )
            self.stdout.write(self.style.SUCCESS(f"Created product: {product.name}"))
        else:
            self.stdout.write("Demo product already exists.")

        token, expires_at = issue_token(user, UserProfile.ROLE_ADMIN)
        self.stdout.write(f"Admin token (expires {expires_at:%Y-%m-%d %H:%M}):\n{token}")
        self.stdout.write(self.style.SUCCESS("Demo data ready."))
