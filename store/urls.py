from django.urls import path

from . import views

app_name = "store"

urlpatterns = [
    # Auth
    path("auth/register", views.register, name="register"),
    path("auth/login", views.login, name="login"),

    # Products and categories
    path("products", views.products, name="products"),
    path("products/<str:product_id>", views.product_detail, name="product-detail"),
    path("products/<str:product_id>/categories", views.product_categories, name="product-categories"),
    path(
        "products/<str:product_id>/categories/<str:category_id>",
        views.product_category_remove,
        name="product-category-remove",
    ),
    path("product-variants", views.variants, name="variants"),
    path("product-variants/<str:variant_id>", views.variant_detail, name="variant-detail"),
    path("categories", views.categories, name="categories"),
    path("categories/<str:category_id>", views.category_detail, name="category-detail"),

    # Orders
    path("orders", views.orders, name="orders"),
    path("orders/<str:order_id>", views.order_detail, name="order-detail"),
    path("orders/<str:order_id>/status", views.order_status, name="order-status"),
]
