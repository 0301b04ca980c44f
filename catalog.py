"""
Catalog lookups used by the cart and order workflows, plus the small amount
of product maintenance needed to stock the store.
"""
from typing import List, Optional

from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, from_bson, get_documents, now, oid, serialize, to_bson
from errors import NotFound, ShopError
from schemas import Product, ProductOut, effective_price


def get_product(database: Database, product_id: str) -> dict:
    doc = serialize(database["products"].find_one({"_id": oid(product_id, "Product")}))
    if not doc:
        raise NotFound("Product not found")
    return doc


def get_active_product(database: Database, product_id: str) -> dict:
    doc = serialize(database["products"].find_one({"_id": oid(product_id, "Product"), "is_active": True}))
    if not doc:
        raise NotFound("Product not found or inactive")
    return doc


def to_product_out(doc: dict) -> ProductOut:
    return ProductOut(
        id=doc["id"],
        name=doc["name"],
        price=doc["price"],
        discount_price=doc.get("discount_price"),
        effective_price=effective_price(doc),
        description=doc.get("description"),
        image=doc.get("image"),
        stock_quantity=doc.get("stock_quantity", 0),
        is_active=doc.get("is_active", True),
        category=doc.get("category"),
        brand=doc.get("brand"),
    )


def list_products(database: Database, q: Optional[str] = None, category: Optional[str] = None,
                  brand: Optional[str] = None) -> List[ProductOut]:
    filter_q = {"is_active": True}
    if q:
        filter_q["name"] = {"$regex": q, "$options": "i"}
    if category:
        filter_q["category"] = category
    if brand:
        filter_q["brand"] = brand
    return [to_product_out(doc) for doc in get_documents(database, "products", filter_q, newest_first=True)]


def create_product(database: Database, product: Product) -> ProductOut:
    try:
        product_id = create_document(database, "products", product)
    except DuplicateKeyError:
        raise ShopError("Product name already exists")
    return to_product_out(get_product(database, product_id))


def update_product(database: Database, product_id: str, changes: dict) -> ProductOut:
    """Partial update; a None discount_price clears the discount."""
    product_oid = oid(product_id, "Product")
    current = database["products"].find_one({"_id": product_oid})
    if not current:
        raise NotFound("Product not found")
    merged = from_bson({k: v for k, v in current.items() if k in Product.model_fields})
    merged.update(changes)
    try:
        product = Product(**merged)
    except ValidationError as exc:
        fields = ", ".join(sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")}))
        raise ShopError(f"Invalid product data: {fields}")
    update_doc = to_bson(product.model_dump())
    update_doc["updated_at"] = now()
    try:
        database["products"].update_one({"_id": product_oid}, {"$set": update_doc})
    except DuplicateKeyError:
        raise ShopError("Product name already exists")
    return to_product_out(get_product(database, product_id))
