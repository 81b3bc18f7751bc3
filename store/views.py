import logging

from django.db import transaction
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods, require_POST

from .auth import (
    PERM_CREATE_ORDER,
    PERM_CREATE_PRODUCT,
    PERM_DELETE_PRODUCT,
    PERM_LIST_ORDERS,
    PERM_LIST_PRODUCTS,
    PERM_UPDATE_ORDER_STATUS,
    PERM_UPDATE_PRODUCT,
    PERM_VIEW_ORDER,
    PERM_VIEW_PRODUCT,
    authenticate_request,
    permission_required,
)
from .exceptions import AuthenticationFailed, NotFound, PermissionDenied, ValidationError
from .models import UserProfile
from .repositories import DjangoOrderRepository, DjangoProductRepository, DjangoVariantRepository
from .serializers import (
    paginated,
    serialize_category,
    serialize_order,
    serialize_product,
    serialize_variant,
)
from .services import AuditService, AuthService, CategoryService, OrderService, ProductService, VariantService
from .utils import get_page_params, parse_decimal, parse_int, parse_json_body, parse_uuid

logger = logging.getLogger(__name__)


def product_service() -> ProductService:
    return ProductService(DjangoProductRepository(), AuditService())


def variant_service() -> VariantService:
    return VariantService(DjangoVariantRepository(), DjangoProductRepository(), AuditService())


def category_service() -> CategoryService:
    return CategoryService(AuditService())


def order_service() -> OrderService:
    return OrderService(DjangoOrderRepository(), DjangoProductRepository(), DjangoVariantRepository(), AuditService())


def _is_admin(request: HttpRequest) -> bool:
    return request.auth_role == UserProfile.ROLE_ADMIN


# Auth

def _require_admin_caller(request):
    try:
        claims = authenticate_request(request)
    except AuthenticationFailed:
        raise AuthenticationFailed("Only authenticated admin users can create admin accounts")
    if claims.get("role") != UserProfile.ROLE_ADMIN:
        raise PermissionDenied("Only admin users can create admin accounts")


@csrf_exempt
@require_POST
def register(request: HttpRequest) -> HttpResponse:
    data = parse_json_body(request)
    # public sign-up only creates customers
    if data.get("role") == UserProfile.ROLE_ADMIN:
        _require_admin_caller(request)
    response = AuthService().register(
        email=data.get("email"),
        password=data.get("password"),
        name=data.get("name"),
        role=data.get("role"),
    )
    return JsonResponse(response, status=201)


@csrf_exempt
@require_POST
def login(request: HttpRequest) -> HttpResponse:
    data = parse_json_body(request)
    return JsonResponse(AuthService().login(email=data.get("email"), password=data.get("password")))


# Products

def _product_fields(data):
    return {
        "name": (data.get("name") or "").strip(),
        "description": data.get("description") or "",
        "price": parse_decimal(data.get("price"), "price"),
        "quantity": parse_int(data.get("quantity"), "quantity"),
    }


@csrf_exempt
@require_http_methods(["GET", "POST"])
def products(request: HttpRequest) -> HttpResponse:
    if request.method == "POST":
        return _create_product(request)
    return _list_products(request)


@permission_required(PERM_LIST_PRODUCTS)
def _list_products(request):
    page, page_size = get_page_params(request)
    in_stock_only = request.GET.get("in_stock_only", "true").lower() != "false"
    items, total = product_service().list(page, page_size, in_stock_only=in_stock_only)
    return JsonResponse(paginated([serialize_product(p) for p in items], total, page, page_size))


@permission_required(PERM_CREATE_PRODUCT)
def _create_product(request):
    fields = _product_fields(parse_json_body(request))
    product = product_service().create(user_id=request.auth_user_id, **fields)
    return JsonResponse(serialize_product(product), status=201)


@csrf_exempt
@require_http_methods(["GET", "PUT", "DELETE"])
def product_detail(request: HttpRequest, product_id: str) -> HttpResponse:
    product_id = parse_uuid(product_id, "product ID")
    if request.method == "PUT":
        return _update_product(request, product_id)
    if request.method == "DELETE":
        return _delete_product(request, product_id)
    return _get_product(request, product_id)


@permission_required(PERM_VIEW_PRODUCT)
def _get_product(request, product_id):
    product = product_service().get(product_id)
    return JsonResponse(serialize_product(product, variants=product.active_variants()))


@permission_required(PERM_UPDATE_PRODUCT)
def _update_product(request, product_id):
    fields = _product_fields(parse_json_body(request))
    product = product_service().update(product_id, user_id=request.auth_user_id, **fields)
    return JsonResponse(serialize_product(product))


@permission_required(PERM_DELETE_PRODUCT)
def _delete_product(request, product_id):
    product_service().delete(product_id, user_id=request.auth_user_id)
    return JsonResponse({"message": "Product deleted successfully"})


@csrf_exempt
@require_http_methods(["GET", "POST"])
def product_categories(request: HttpRequest, product_id: str) -> HttpResponse:
    product_id = parse_uuid(product_id, "product ID")
    if request.method == "POST":
        return _assign_category(request, product_id)
    return _list_product_categories(request, product_id)


@permission_required(PERM_VIEW_PRODUCT)
def _list_product_categories(request, product_id):
    categories = category_service().product_categories(product_id)
    return JsonResponse({"data": [serialize_category(c) for c in categories]})


@permission_required(PERM_UPDATE_PRODUCT)
def _assign_category(request, product_id):
    data = parse_json_body(request)
    category_id = parse_uuid(data.get("category_id"), "category ID")
    category_service().assign_to_product(product_id, category_id, user_id=request.auth_user_id)
    return JsonResponse({"message": "Category assigned to product successfully"}, status=201)


@csrf_exempt
@require_http_methods(["DELETE"])
@permission_required(PERM_UPDATE_PRODUCT)
def product_category_remove(request: HttpRequest, product_id: str, category_id: str) -> HttpResponse:
    product_id = parse_uuid(product_id, "product ID")
    category_id = parse_uuid(category_id, "category ID")
    category_service().remove_from_product(product_id, category_id, user_id=request.auth_user_id)
    return JsonResponse({"message": "Category removed from product successfully"})


# Product variants

def _variant_fields(data):
    price_override = data.get("price_override")
    return {
        "variant_name": data.get("variant_name") or "",
        "variant_value": data.get("variant_value") or "",
        "price_override": None if price_override is None else parse_decimal(price_override, "price_override"),
        "quantity": parse_int(data.get("quantity"), "quantity"),
    }


@csrf_exempt
@require_http_methods(["GET", "POST"])
def variants(request: HttpRequest) -> HttpResponse:
    if request.method == "POST":
        return _create_variant(request)
    return _list_variants(request)


@permission_required(PERM_LIST_PRODUCTS)
def _list_variants(request):
    product_id = parse_uuid(request.GET.get("product_id"), "product ID")
    page, page_size = get_page_params(request)
    items, total = variant_service().list_by_product(product_id, page, page_size)
    return JsonResponse(paginated([serialize_variant(v) for v in items], total, page, page_size))


@permission_required(PERM_CREATE_PRODUCT)
def _create_variant(request):
    data = parse_json_body(request)
    product_id = parse_uuid(data.get("product_id"), "product ID")
    variant = variant_service().create(product_id, user_id=request.auth_user_id, **_variant_fields(data))
    return JsonResponse(serialize_variant(variant), status=201)


@csrf_exempt
@require_http_methods(["GET", "PUT", "DELETE"])
def variant_detail(request: HttpRequest, variant_id: str) -> HttpResponse:
    variant_id = parse_uuid(variant_id, "product variant ID")
    if request.method == "PUT":
        return _update_variant(request, variant_id)
    if request.method == "DELETE":
        return _delete_variant(request, variant_id)
    return _get_variant(request, variant_id)


@permission_required(PERM_VIEW_PRODUCT)
def _get_variant(request, variant_id):
    return JsonResponse(serialize_variant(variant_service().get(variant_id)))


@permission_required(PERM_UPDATE_PRODUCT)
def _update_variant(request, variant_id):
    fields = _variant_fields(parse_json_body(request))
    variant = variant_service().update(variant_id, user_id=request.auth_user_id, **fields)
    return JsonResponse(serialize_variant(variant))


@permission_required(PERM_DELETE_PRODUCT)
def _delete_variant(request, variant_id):
    variant_service().delete(variant_id, user_id=request.auth_user_id)
    return JsonResponse({"message": "Product variant deleted successfully"})


# Categories

@csrf_exempt
@require_http_methods(["GET", "POST"])
def categories(request: HttpRequest) -> HttpResponse:
    if request.method == "POST":
        return _create_category(request)
    return _list_categories(request)


@permission_required(PERM_LIST_PRODUCTS)
def _list_categories(request):
    name = request.GET.get("name")
    if name:
        return JsonResponse(serialize_category(category_service().get_by_name(name)))
    page, page_size = get_page_params(request)
    items, total = category_service().list(page, page_size)
    return JsonResponse(paginated([serialize_category(c) for c in items], total, page, page_size))


@permission_required(PERM_CREATE_PRODUCT)
def _create_category(request):
    data = parse_json_body(request)
    category = category_service().create(data.get("name"), user_id=request.auth_user_id)
    return JsonResponse(serialize_category(category), status=201)


@csrf_exempt
@require_http_methods(["GET", "PUT", "DELETE"])
def category_detail(request: HttpRequest, category_id: str) -> HttpResponse:
    category_id = parse_uuid(category_id, "category ID")
    if request.method == "PUT":
        return _update_category(request, category_id)
    if request.method == "DELETE":
        return _delete_category(request, category_id)
    return _get_category(request, category_id)


@permission_required(PERM_VIEW_PRODUCT)
def _get_category(request, category_id):
    return JsonResponse(serialize_category(category_service().get(category_id)))


@permission_required(PERM_UPDATE_PRODUCT)
def _update_category(request, category_id):
    data = parse_json_body(request)
    category = category_service().update(category_id, data.get("name"), user_id=request.auth_user_id)
    return JsonResponse(serialize_category(category))


@permission_required(PERM_DELETE_PRODUCT)
def _delete_category(request, category_id):
    category_service().delete(category_id, user_id=request.auth_user_id)
    return JsonResponse({"message": "Category deleted successfully"})


# Orders

@csrf_exempt
@require_http_methods(["GET", "POST"])
def orders(request: HttpRequest) -> HttpResponse:
    if request.method == "POST":
        return _create_order(request)
    return _list_orders(request)


@permission_required(PERM_CREATE_ORDER)
def _create_order(request):
    data = parse_json_body(request)
    customer_id = data.get("customer_id")
    customer_id = request.auth_user_id if customer_id is None else parse_int(customer_id, "customer ID")
    if not _is_admin(request) and customer_id != request.auth_user_id:
        raise PermissionDenied("Forbidden: insufficient permissions for this action")

    lines = data.get("products")
    if not isinstance(lines, list):
        raise ValidationError("Order must have at least one item")
    items = []
    for line in lines:
        if not isinstance(line, dict):
            raise ValidationError("Invalid request body")
        variant_id = line.get("variant_id")
        items.append({
            "product_id": parse_uuid(line.get("product_id"), "product ID"),
            "variant_id": parse_uuid(variant_id, "variant ID") if variant_id else None,
            "quantity": parse_int(line.get("quantity"), "quantity"),
        })

    service = order_service()
    with transaction.atomic():
        order = service.create(customer_id, items)
    return JsonResponse(serialize_order(order, service.items(order.pk)), status=201)


@permission_required(PERM_LIST_ORDERS)
def _list_orders(request):
    page, page_size = get_page_params(request)
    customer_id = None if _is_admin(request) else request.auth_user_id
    service = order_service()
    items, total = service.list(
        page,
        page_size,
        status=request.GET.get("status") or None,
        payment_status=request.GET.get("payment_status") or None,
        customer_id=customer_id,
    )
    data = [serialize_order(order, service.items(order.pk)) for order in items]
    return JsonResponse(paginated(data, total, page, page_size))


@csrf_exempt
@require_http_methods(["GET"])
@permission_required(PERM_VIEW_ORDER)
def order_detail(request: HttpRequest, order_id: str) -> HttpResponse:
    order_id = parse_uuid(order_id, "order ID")
    service = order_service()
    order = service.get(order_id)
    if not _is_admin(request) and order.customer_id != request.auth_user_id:
        raise NotFound("Order not found")
    return JsonResponse(serialize_order(order, service.items(order.pk)))


@csrf_exempt
@require_http_methods(["PUT"])
@permission_required(PERM_UPDATE_ORDER_STATUS)
def order_status(request: HttpRequest, order_id: str) -> HttpResponse:
    order_id = parse_uuid(order_id, "order ID")
    data = parse_json_body(request)
    service = order_service()
    order = service.update_status(order_id, data.get("status") or "", user_id=request.auth_user_id)
    return JsonResponse(serialize_order(order, service.items(order.pk)))
