"""Plain-dict renderings of store models for JSON responses.

Decimals are passed through untouched; ``DjangoJSONEncoder`` (the
``JsonResponse`` default) renders them as strings.
"""

from typing import Any, Dict, Iterable, List, Optional


def serialize_category(category) -> Dict[str, Any]:
    return {"id": str(category.id), "name": category.name}


def serialize_variant(variant) -> Dict[str, Any]:
    return {
        "id": str(variant.id),
        "product_id": str(variant.product_id),
        "variant_name": variant.variant_name,
        "variant_value": variant.variant_value,
        "price": variant.get_price(),
        "price_override": variant.price_override,
        "has_override": variant.has_price_override(),
        "quantity": variant.quantity,
        "created_at": variant.created_at,
        "updated_at": variant.updated_at,
    }


def serialize_product(product, variants: Optional[Iterable] = None) -> Dict[str, Any]:
    data = {
        "id": str(product.id),
        "name": product.name,
        "description": product.description,
        "price": product.price,
        "quantity": product.quantity,
        "created_at": product.created_at,
        "updated_at": product.updated_at,
    }
    if variants is not None:
        variants = list(variants)
        data["variants"] = [serialize_variant(variant) for variant in variants]
        data["has_variants"] = bool(variants)
        data["total_variant_stock"] = sum(variant.quantity for variant in variants)
    return data


def serialize_order_item(item) -> Dict[str, Any]:
    return {
        "product_id": str(item.product_id),
        "variant_id": str(item.variant_id) if item.variant_id else None,
        "quantity": item.quantity,
        "price": item.price,
        "subtotal": item.total_price,
    }


def serialize_order(order, items: Iterable) -> Dict[str, Any]:
    return {
        "id": str(order.id),
        "customer_id": order.customer_id,
        "products": [serialize_order_item(item) for item in items],
        "total_price": order.total_price,
        "status": order.status,
        "payment_status": order.payment_status,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def paginated(data: List[Dict[str, Any]], total: int, page: int, page_size: int) -> Dict[str, Any]:
    return {"data": data, "total": total, "page": page, "page_size": page_size}
