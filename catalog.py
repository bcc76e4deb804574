"""
Stock lookups for the storefront

Read-only helpers the cart UI polls; neither creates reservations.
"""
from typing import Any, Dict, List, Sequence

from bson import ObjectId

from database import collection
from inventory_reservation import get_effective_stock
from schemas import CartItem

MAX_STOCK_LOOKUP = 50


def get_stock_info(product_ids: Sequence[str]) -> List[Dict[str, Any]]:
    oids = [ObjectId(pid) for pid in product_ids if ObjectId.is_valid(pid)]
    products = collection("product").find({"_id": {"$in": oids}}, {"name": 1, "count_in_stock": 1})
    info = []
    for p in products:
        pid = str(p["_id"])
        actual = int(p.get("count_in_stock", 0))
        effective = get_effective_stock(pid, actual)
        info.append({
            "product_id": pid,
            "name": p.get("name"),
            "actual_stock": actual,
            "effective_stock": effective,
            "in_stock": effective > 0,
        })
    return info


def validate_cart(items: Sequence[CartItem]) -> Dict[str, Any]:
    """Split cart lines into valid product ids and invalid lines with a reason."""
    oids = [ObjectId(i.product_id) for i in items if ObjectId.is_valid(i.product_id)]
    cursor = collection("product").find({"_id": {"$in": oids}}, {"name": 1, "count_in_stock": 1, "is_published": 1})
    products = {str(p["_id"]): p for p in cursor}

    valid_items: List[str] = []
    invalid_items: List[Dict[str, str]] = []
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            reason = "not_found"
        elif not product.get("is_published", True):
            reason = "not_published"
        elif product.get("count_in_stock", 0) < item.quantity:
            reason = "insufficient_stock"
        else:
            valid_items.append(item.product_id)
            continue
        invalid_items.append({"product_id": item.product_id, "name": item.name, "reason": reason})

    return {
        "valid_items": valid_items,
        "invalid_items": invalid_items,
        "has_invalid_items": bool(invalid_items),
    }
