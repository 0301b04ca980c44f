import logging
import os
import sys
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart as cart_service
import catalog
import database
import orders
from auth import Principal, get_current_principal, login_rate_limiter, require_admin
from database import get_db
from errors import ShopError
from schemas import (
    ApiMessage,
    AuthResponse,
    CartView,
    CreateOrderPayload,
    OrderStatus,
    OrderView,
    Product,
    ProductOut,
    UserOut,
)
from seed import seed, seed_enabled

logger = logging.getLogger(__name__)


def setup_logging():
    """Configures the root logger once; a no-op if handlers already exist."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("Could not create indexes; continuing without them")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope
def error_response(status_code: int, message: str, errors: Optional[dict] = None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ShopError)
async def handle_shop_error(request: Request, exc: ShopError):
    return error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors[field or "body"] = err.get("msg", "Invalid value")
    logger.warning("Validation failed: %s", errors)
    return error_response(400, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return error_response(500, "An unexpected error occurred")


# Health checks
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


# Auth models
class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ChangePasswordPayload(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class UpdateProfilePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


@app.post("/api/auth/register", response_model=AuthResponse)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    return auth.register(db, payload.name, payload.email, payload.password)


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginPayload, request: Request, db: Database = Depends(get_db)):
    # Rate limit per IP
    ip = request.client.host if request.client else "unknown"
    login_rate_limiter.check(ip)
    return auth.login(db, payload.email, payload.password)


@app.post("/api/auth/change-password", response_model=ApiMessage)
def change_password(payload: ChangePasswordPayload, principal: Principal = Depends(get_current_principal),
                    db: Database = Depends(get_db)):
    auth.change_password(db, principal, payload.current_password, payload.new_password)
    return ApiMessage(success=True, message="Password changed successfully")


@app.post("/api/auth/seed")
def seed_data(db: Database = Depends(get_db)):
    if not seed_enabled():
        raise HTTPException(status_code=404, detail="Not found")
    return seed(db)


# Profile
@app.get("/api/user/profile", response_model=UserOut)
def get_profile(principal: Principal = Depends(get_current_principal), db: Database = Depends(get_db)):
    return auth.get_profile(db, principal)


@app.put("/api/user/profile", response_model=UserOut)
def update_profile(payload: UpdateProfilePayload, principal: Principal = Depends(get_current_principal),
                   db: Database = Depends(get_db)):
    return auth.update_profile(db, principal, payload.name)


@app.get("/api/admin/users", response_model=List[UserOut], dependencies=[Depends(require_admin)])
def list_users(db: Database = Depends(get_db)):
    return auth.list_users(db)


# Products
class ProductUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    price: Optional[Decimal] = Field(None, ge=0)
    discount_price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None
    image: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    category: Optional[str] = None
    brand: Optional[str] = None


@app.get("/api/products", response_model=List[ProductOut])
def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  db: Database = Depends(get_db)):
    return catalog.list_products(db, q=q, category=category, brand=brand)


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Database = Depends(get_db)):
    return catalog.to_product_out(catalog.get_active_product(db, product_id))


@app.post("/api/admin/products", response_model=ProductOut, status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: Product, db: Database = Depends(get_db)):
    return catalog.create_product(db, payload)


@app.put("/api/admin/products/{product_id}", response_model=ProductOut, dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdatePayload, db: Database = Depends(get_db)):
    return catalog.update_product(db, product_id, payload.model_dump(exclude_unset=True))


# Cart
class AddToCartPayload(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class UpdateCartItemPayload(BaseModel):
    quantity: int = Field(..., ge=1)


@app.get("/api/user/cart", response_model=CartView)
def get_cart(principal: Principal = Depends(get_current_principal), db: Database = Depends(get_db)):
    return cart_service.get_or_create_cart(db, principal.user_id)


@app.post("/api/user/cart/add", response_model=CartView)
def add_to_cart(payload: AddToCartPayload, principal: Principal = Depends(get_current_principal),
                db: Database = Depends(get_db)):
    return cart_service.add_to_cart(db, principal.user_id, payload.product_id, payload.quantity)


@app.put("/api/user/cart/items/{item_id}", response_model=CartView)
def update_cart_item(item_id: str, payload: UpdateCartItemPayload,
                     principal: Principal = Depends(get_current_principal), db: Database = Depends(get_db)):
    return cart_service.update_cart_item(db, principal.user_id, item_id, payload.quantity)


@app.delete("/api/user/cart/items/{item_id}", response_model=CartView)
def remove_from_cart(item_id: str, principal: Principal = Depends(get_current_principal),
                     db: Database = Depends(get_db)):
    return cart_service.remove_from_cart(db, principal.user_id, item_id)


@app.delete("/api/user/cart/clear", response_model=ApiMessage)
def clear_cart(principal: Principal = Depends(get_current_principal), db: Database = Depends(get_db)):
    cart_service.clear_cart(db, principal.user_id)
    return ApiMessage(success=True, message="Cart cleared successfully")


# Orders
class UpdateOrderStatusPayload(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


@app.post("/api/user/orders", response_model=OrderView, status_code=201)
def create_order(payload: CreateOrderPayload, principal: Principal = Depends(get_current_principal),
                 db: Database = Depends(get_db)):
    return orders.create_order_from_cart(db, principal.user_id, payload)


@app.get("/api/user/orders", response_model=List[OrderView])
def list_my_orders(principal: Principal = Depends(get_current_principal), db: Database = Depends(get_db)):
    return orders.get_user_orders(db, principal.user_id)


@app.get("/api/user/orders/{order_id}", response_model=OrderView)
def get_my_order(order_id: str, principal: Principal = Depends(get_current_principal),
                 db: Database = Depends(get_db)):
    return orders.get_user_order(db, principal.user_id, order_id)


@app.get("/api/admin/orders", response_model=List[OrderView], dependencies=[Depends(require_admin)])
def list_orders(db: Database = Depends(get_db)):
    return orders.get_all_orders(db)


@app.get("/api/admin/orders/status/{status}", response_model=List[OrderView], dependencies=[Depends(require_admin)])
def list_orders_by_status(status: OrderStatus, db: Database = Depends(get_db)):
    return orders.get_orders_by_status(db, status)


@app.get("/api/admin/orders/{order_id}", response_model=OrderView, dependencies=[Depends(require_admin)])
def get_order(order_id: str, db: Database = Depends(get_db)):
    return orders.get_order(db, order_id)


@app.put("/api/admin/orders/{order_id}/status", response_model=OrderView, dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: UpdateOrderStatusPayload, db: Database = Depends(get_db)):
    return orders.update_order_status(db, order_id, payload.status, payload.notes)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
