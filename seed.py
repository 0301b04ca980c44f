"""
Development seeding: one admin account and a handful of sample products.
"""
import logging
import os
from decimal import Decimal

from faker import Faker
from pymongo.database import Database

from auth import hash_password
from database import create_document
from schemas import Product, Role, User

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@storefront.io")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Admin@123")


def seed_enabled() -> bool:
    return os.getenv("SEED_ENABLED", "").lower() in ("1", "true", "yes")


def seed(database: Database, product_count: int = 12) -> dict:
    fake = Faker()
    created_users = 0
    created_products = 0

    # Ensure one admin
    users = database["users"]
    if not users.find_one({"role": "admin"}):
        if users.find_one({"email_key": ADMIN_EMAIL.lower()}):
            logger.warning("Seed admin %s is already registered as a regular user; not promoting it", ADMIN_EMAIL)
        else:
            admin = User(
                name="Admin",
                email=ADMIN_EMAIL,
                email_key=ADMIN_EMAIL.lower(),
                password_hash=hash_password(ADMIN_PASSWORD),
                role=Role.ADMIN,
            )
            create_document(database, "users", admin)
            created_users += 1

    to_create = max(0, product_count - database["products"].count_documents({}))
    for _ in range(to_create):
        price = Decimal(fake.random_int(min=50, max=5000)) * 1000
        discounted = fake.boolean(chance_of_getting_true=30)
        product = Product(
            name=f"{fake.color_name()} {fake.word().title()} {fake.unique.random_int(min=100, max=999)}",
            price=price,
            discount_price=price * Decimal("0.9") if discounted else None,
            description=fake.sentence(nb_words=12),
            image=fake.image_url(),
            stock_quantity=fake.random_int(min=0, max=200),
            category=fake.random_element(["Shirts", "Pants", "Shoes", "Accessories"]),
            brand=fake.company(),
        )
        create_document(database, "products", product)
        created_products += 1

    return {"created_users": created_users, "created_products": created_products}
