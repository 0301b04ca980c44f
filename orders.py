"""
Cart -> order conversion and order administration.

An order is written as one document with its details embedded, so the order
and its line items appear together or not at all. The cart is claimed first
with a version-guarded update; if the order write then fails, the claimed
items are put back.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from cart import merge_item
from catalog import get_product
from database import create_document, get_documents, now, oid, serialize, to_bson
from errors import CartConflict, CartNotFound, EmptyCart, NotFound
from schemas import (
    CreateOrderPayload,
    Order,
    OrderDetail,
    OrderDetailView,
    OrderStatus,
    OrderView,
    PaymentMethod,
    PaymentStatus,
    decode_order_status,
    decode_payment_method,
    decode_payment_status,
    effective_price,
)

logger = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 3


def price_snapshot(database: Database, items: List[dict]) -> Tuple[List[OrderDetail], Decimal]:
    """Capture each line's effective unit price now and total them exactly.

    Products are not re-checked for is_active here.
    """
    stamp = now()
    details = []
    total = Decimal("0")
    for item in items:
        product = get_product(database, item["product_id"])
        price = effective_price(product)
        total += price * item["quantity"]
        details.append(OrderDetail(
            id=str(ObjectId()),
            product_id=product["id"],
            product_name=product["name"],
            product_image=product.get("image"),
            quantity=item["quantity"],
            price=price,
            created_at=stamp,
        ))
    return details, total


def _claim_cart(database: Database, cart_doc: dict) -> bool:
    claimed = database["carts"].find_one_and_update(
        {"_id": cart_doc["_id"], "version": cart_doc.get("version", 0)},
        {"$set": {"items": [], "updated_at": now()}, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )
    return claimed is not None


def _restore_cart(database: Database, cart_doc: dict) -> None:
    """Put claimed lines back, merging with anything added since the claim."""
    for item in cart_doc["items"]:
        if not merge_item(database, cart_doc["_id"], item):
            logger.error("Could not restore product %s (x%d) to cart %s after a failed order write",
                         item["product_id"], item["quantity"], cart_doc["_id"])


def create_order_from_cart(database: Database, user_id: str, payload: CreateOrderPayload) -> OrderView:
    user = database["users"].find_one({"_id": oid(user_id, "User")})
    if not user:
        raise NotFound("User not found")

    for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
        cart_doc = database["carts"].find_one({"user_id": user_id})
        if not cart_doc:
            raise CartNotFound()
        if not cart_doc.get("items"):
            raise EmptyCart()

        details, total_price = price_snapshot(database, cart_doc["items"])
        final_total = total_price + payload.shipping_fee - payload.discount_amount
        order = Order(
            user_id=user_id,
            user_name=user.get("name", ""),
            total_price=total_price,
            status=OrderStatus.PENDING,
            shipping_address=payload.shipping_address,
            shipping_city=payload.shipping_city,
            shipping_district=payload.shipping_district,
            shipping_ward=payload.shipping_ward,
            shipping_phone=payload.shipping_phone,
            shipping_fee=payload.shipping_fee,
            payment_method=payload.payment_method,
            payment_status=PaymentStatus.PENDING,
            notes=payload.notes,
            discount_amount=payload.discount_amount,
            final_total=final_total,
            details=details,
        )
        # Fully encoded before the cart is touched
        order_doc = to_bson(order.model_dump())

        if not _claim_cart(database, cart_doc):
            logger.info("Cart %s changed while ordering (attempt %d), re-reading", cart_doc["_id"], attempt)
            continue

        try:
            order_id = create_document(database, "orders", order_doc)
        except Exception:
            _restore_cart(database, cart_doc)
            raise

        logger.info("Created order %s for user %s, total %s", order_id, user_id, final_total)
        return get_order(database, order_id)

    raise CartConflict()


def to_order_view(doc: dict) -> OrderView:
    details = [
        OrderDetailView(
            id=d["id"],
            product_id=d["product_id"],
            product_name=d["product_name"],
            product_image=d.get("product_image"),
            quantity=d["quantity"],
            price=d["price"],
            subtotal=d["price"] * d["quantity"],
        )
        for d in doc.get("details", [])
    ]
    return OrderView(
        id=doc["id"],
        user_id=doc["user_id"],
        user_name=doc.get("user_name", ""),
        total_price=doc["total_price"],
        status=decode_order_status(doc.get("status")),
        shipping_address=doc["shipping_address"],
        shipping_city=doc["shipping_city"],
        shipping_district=doc["shipping_district"],
        shipping_ward=doc["shipping_ward"],
        shipping_phone=doc["shipping_phone"],
        shipping_fee=doc.get("shipping_fee", Decimal("0")),
        payment_method=decode_payment_method(doc.get("payment_method")),
        payment_status=decode_payment_status(doc.get("payment_status")),
        transaction_id=doc.get("transaction_id"),
        paid_at=doc.get("paid_at"),
        notes=doc.get("notes"),
        discount_amount=doc.get("discount_amount", Decimal("0")),
        final_total=doc["final_total"],
        order_details=details,
        created_at=doc.get("created_at"),
        updated_at=doc.get("updated_at"),
    )


def get_order(database: Database, order_id: str) -> OrderView:
    doc = serialize(database["orders"].find_one({"_id": oid(order_id, "Order")}))
    if not doc:
        raise NotFound("Order not found")
    return to_order_view(doc)


def get_user_order(database: Database, user_id: str, order_id: str) -> OrderView:
    order = get_order(database, order_id)
    if order.user_id != user_id:
        raise NotFound("Order not found")
    return order


def get_user_orders(database: Database, user_id: str) -> List[OrderView]:
    return [to_order_view(doc) for doc in get_documents(database, "orders", {"user_id": user_id}, newest_first=True)]


def get_all_orders(database: Database) -> List[OrderView]:
    return [to_order_view(doc) for doc in get_documents(database, "orders", newest_first=True)]


def get_orders_by_status(database: Database, status: OrderStatus) -> List[OrderView]:
    return [to_order_view(doc) for doc in get_documents(database, "orders", {"status": status.value}, newest_first=True)]


def update_order_status(database: Database, order_id: str, status: OrderStatus,
                        notes: Optional[str] = None) -> OrderView:
    """Set any status; no transition graph is enforced.

    Completing a cash-on-delivery order whose payment is still pending marks
    it paid.
    """
    order = get_order(database, order_id)
    stamp = now()
    changes = {"status": status.value, "updated_at": stamp}
    if notes is not None:
        changes["notes"] = notes
    if (status == OrderStatus.COMPLETED
            and order.payment_method == PaymentMethod.COD
            and order.payment_status == PaymentStatus.PENDING):
        changes["payment_status"] = PaymentStatus.PAID.value
        changes["paid_at"] = stamp

    database["orders"].update_one({"_id": oid(order_id, "Order")}, {"$set": to_bson(changes)})
    return get_order(database, order_id)
