from django.contrib import admin

from .models import AuditLog, Category, Order, OrderItem, Product, ProductVariant, UserProfile


class ProductVariantInline(admin.TabularInline):
    model = ProductVariant
    extra = 0
    fields = ("variant_name", "variant_value", "price_override", "quantity", "deleted_at")


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "price", "quantity", "created_at")
    search_fields = ("name", "description")
    filter_horizontal = ("categories",)
    inlines = [ProductVariantInline]


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ("name", "created_at")
    search_fields = ("name",)


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product", "variant", "quantity", "price", "total_price")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "customer_id", "status", "payment_status", "total_price", "created_at")
    list_filter = ("status", "payment_status", "created_at")
    search_fields = ("id", "customer_id")
    inlines = [OrderItemInline]


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "role", "phone")
    list_filter = ("role",)
    search_fields = ("user__email", "phone")


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("timestamp", "action", "resource_type", "resource_id", "user")
    list_filter = ("action", "resource_type")
    search_fields = ("resource_id",)
    readonly_fields = ("user", "action", "resource_type", "resource_id", "payload_before", "payload_after", "timestamp")
