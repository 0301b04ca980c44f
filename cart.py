"""
Per-user cart management.

Cart items live inside the cart document, one element per product. Every
mutation bumps the cart `version`, which order creation uses as its
optimistic lock.
"""
import logging
from decimal import Decimal

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import get_active_product
from database import create_document, from_bson, now, oid
from errors import CartNotFound, NotFound, ShopError
from schemas import Cart, CartItem, CartItemView, CartView, effective_price

logger = logging.getLogger(__name__)


def find_cart(database: Database, user_id: str):
    return database["carts"].find_one({"user_id": user_id})


def build_cart_view(database: Database, doc: dict) -> CartView:
    items = []
    total_items = 0
    total_price = Decimal("0")
    for item in doc.get("items", []):
        product = from_bson(database["products"].find_one({"_id": oid(item["product_id"], "Product")}) or {})
        price = effective_price(product) if product else None
        subtotal = price * item["quantity"] if price is not None else Decimal("0")
        total_items += item["quantity"]
        total_price += subtotal
        items.append(CartItemView(
            id=item["id"],
            product_id=item["product_id"],
            product_name=product.get("name"),
            product_price=price,
            product_image=product.get("image"),
            quantity=item["quantity"],
            subtotal=subtotal,
        ))
    return CartView(
        id=str(doc["_id"]),
        user_id=doc["user_id"],
        items=items,
        total_items=total_items,
        total_price=total_price,
    )


def _get_or_create(database: Database, user_id: str) -> dict:
    doc = find_cart(database, user_id)
    if doc:
        return doc
    if not database["users"].find_one({"_id": oid(user_id, "User")}):
        raise NotFound("User not found")
    try:
        create_document(database, "carts", Cart(user_id=user_id))
    except DuplicateKeyError:
        logger.debug("Cart for %s was created concurrently", user_id)
    return find_cart(database, user_id)


def get_or_create_cart(database: Database, user_id: str) -> CartView:
    return build_cart_view(database, _get_or_create(database, user_id))


def merge_item(database: Database, cart_id, item: dict, attempts: int = 3) -> bool:
    """Add `item` to the cart, folding its quantity into an existing line for the same product.

    Two guarded writes: bump the existing line, or push the new one only while
    no line for this product exists. Losing both races just means retrying.
    """
    carts = database["carts"]
    for _ in range(attempts):
        stamp = now()
        result = carts.update_one(
            {"_id": cart_id, "items.product_id": item["product_id"]},
            {"$inc": {"items.$.quantity": item["quantity"], "version": 1}, "$set": {"updated_at": stamp}},
        )
        if result.matched_count:
            return True
        result = carts.update_one(
            {"_id": cart_id, "items.product_id": {"$ne": item["product_id"]}},
            {"$push": {"items": item}, "$inc": {"version": 1}, "$set": {"updated_at": stamp}},
        )
        if result.matched_count:
            return True
    return False


def add_to_cart(database: Database, user_id: str, product_id: str, quantity: int) -> CartView:
    """Add a product, or increase the quantity of its existing line."""
    if quantity < 1:
        raise ShopError("Quantity must be at least 1")
    product = get_active_product(database, product_id)
    cart_doc = _get_or_create(database, user_id)

    stamp = now()
    item = CartItem(
        id=str(ObjectId()),
        product_id=product["id"],
        quantity=quantity,
        created_at=stamp,
        updated_at=stamp,
    )
    if not merge_item(database, cart_doc["_id"], item.model_dump()):
        raise ShopError("Could not add item to cart, please retry")

    return build_cart_view(database, database["carts"].find_one({"_id": cart_doc["_id"]}))


def update_cart_item(database: Database, user_id: str, item_id: str, quantity: int) -> CartView:
    if quantity < 1:
        raise ShopError("Quantity must be at least 1")
    cart_doc = find_cart(database, user_id)
    if not cart_doc:
        raise CartNotFound()
    stamp = now()
    result = database["carts"].update_one(
        {"_id": cart_doc["_id"], "items.id": item_id},
        {
            "$set": {"items.$.quantity": quantity, "items.$.updated_at": stamp, "updated_at": stamp},
            "$inc": {"version": 1},
        },
    )
    if result.matched_count == 0:
        raise NotFound("Cart item not found")
    return build_cart_view(database, database["carts"].find_one({"_id": cart_doc["_id"]}))


def remove_from_cart(database: Database, user_id: str, item_id: str) -> CartView:
    cart_doc = find_cart(database, user_id)
    if not cart_doc:
        raise CartNotFound()
    result = database["carts"].update_one(
        {"_id": cart_doc["_id"], "items.id": item_id},
        {"$pull": {"items": {"id": item_id}}, "$inc": {"version": 1}, "$set": {"updated_at": now()}},
    )
    if result.matched_count == 0:
        raise NotFound("Cart item not found")
    return build_cart_view(database, database["carts"].find_one({"_id": cart_doc["_id"]}))


def clear_cart(database: Database, user_id: str) -> None:
    cart_doc = find_cart(database, user_id)
    if not cart_doc:
        raise CartNotFound()
    database["carts"].update_one(
        {"_id": cart_doc["_id"]},
        {"$set": {"items": [], "updated_at": now()}, "$inc": {"version": 1}},
    )
