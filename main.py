import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any
from urllib.parse import urlencode

from fastapi import FastAPI, Depends, Body, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import cart as carts
import catalog
import coupons
import orders
import ratings
import users
from database import connect, ensure_indexes, get_db
from errors import StorefrontError, status_code_for
from esewa import EsewaGateway
from schemas import ShippingInfo
from security import get_current_user, require_admin
from settings import Settings, get_settings

logger = logging.getLogger("storefront")

# App setup
settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(app.state.db)
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.settings = settings
app.state.db = connect(settings)


def get_gateway(settings: Settings = Depends(get_settings)) -> EsewaGateway:
    return EsewaGateway(settings)


# Error handling
@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"message": exc.message, "error_type": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return JSONResponse(
        status_code=400,
        content={"message": "; ".join(problems) or "Invalid request", "error_type": "ValidationError"},
    )


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"message": "Database unavailable", "error_type": "DatabaseError"})


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    mobile: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = 1
    color: Optional[str] = None


class ApplyCouponRequest(BaseModel):
    coupon: str = Field(..., min_length=1)


class CreateOrderRequest(BaseModel):
    cod: bool = False
    payment_method: Optional[str] = None
    coupon_applied: bool = False
    coupon_code: Optional[str] = None
    shipping_info: ShippingInfo


class OrderStatusUpdate(BaseModel):
    status: str


class RatingRequest(BaseModel):
    product_id: str
    star: int
    comment: Optional[str] = None


class CouponIn(BaseModel):
    name: str
    expiry: datetime
    discount: int
    user_id: Optional[str] = None


# Health
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health(db: Database = Depends(get_db)):
    response = {"status": "ok", "database": "connected", "collections": []}
    try:
        response["collections"] = db.list_collection_names()[:10]
    except PyMongoError as e:
        response["status"] = "degraded"
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth & users
@app.post("/api/user/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db),
             settings: Settings = Depends(get_settings)):
    return users.register(db, settings, payload.name, payload.email, payload.password, payload.mobile)


@app.post("/api/user/login")
def login(payload: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return users.login(db, settings, payload.email, payload.password)


@app.get("/api/user/me")
def me(current_user: dict = Depends(get_current_user)):
    return users.public_user(current_user)


@app.put("/api/user/me")
def update_profile(update: Dict[str, Any] = Body(...), current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return users.update_profile(db, current_user, update)


@app.get("/api/user/all")
def list_users(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"items": users.list_users(db)}


@app.put("/api/user/{user_id}/block")
def block_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return users.set_blocked(db, user_id, True)


@app.put("/api/user/{user_id}/unblock")
def unblock_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return users.set_blocked(db, user_id, False)


# Products
def _catalog_routes(prefix: str, collection: str):
    @app.get(prefix, name=f"list_{collection}")
    def list_products(search: Optional[str] = None, category: Optional[str] = None,
                      brand: Optional[str] = None, color: Optional[str] = None,
                      min_price: Optional[float] = None, max_price: Optional[float] = None,
                      sort: Optional[str] = None, page: int = 1, page_size: int = 12,
                      db: Database = Depends(get_db)):
        return catalog.list_products(db, collection, search, category, brand, color,
                                     min_price, max_price, sort, page, page_size)

    @app.put(f"{prefix}/rating", name=f"rate_{collection}")
    def rate_product(payload: RatingRequest, user: dict = Depends(get_current_user),
                     db: Database = Depends(get_db)):
        return ratings.rate(db, collection, payload.product_id, str(user["_id"]),
                            payload.star, payload.comment)

    @app.get(prefix + "/{product_id}", name=f"get_{collection}")
    def get_product(product_id: str, db: Database = Depends(get_db)):
        return catalog.get_product(db, collection, product_id)

    @app.post(prefix, status_code=201, name=f"create_{collection}")
    def create_product(payload: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin),
                       db: Database = Depends(get_db)):
        return catalog.create_product(db, collection, payload)

    @app.put(prefix + "/{product_id}", name=f"update_{collection}")
    def update_product(product_id: str, payload: Dict[str, Any] = Body(...),
                       admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
        return catalog.update_product(db, collection, product_id, payload)

    @app.delete(prefix + "/{product_id}", name=f"delete_{collection}")
    def delete_product(product_id: str, admin: dict = Depends(require_admin),
                       db: Database = Depends(get_db)):
        catalog.delete_product(db, collection, product_id)
        return {"id": product_id, "deleted": True}


_catalog_routes("/api/product", "product")
_catalog_routes("/api/sale-product", "saleproduct")


@app.get("/api/product/{product_id}/recommendations")
def product_recommendations(product_id: str, db: Database = Depends(get_db)):
    return {"recommendations": catalog.recommend(db, product_id)}


# Cart
@app.get("/api/user/cart")
def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.get_cart(db, str(user["_id"]))


@app.post("/api/user/cart")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.add_or_update_item(db, str(user["_id"]), item.product_id, item.quantity, item.color)


@app.delete("/api/user/cart/{product_id}")
def cart_remove(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.remove_item(db, str(user["_id"]), product_id)


@app.delete("/api/user/cart")
def cart_empty(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    carts.empty(db, str(user["_id"]))
    return {"message": "Cart emptied"}


@app.post("/api/user/cart/applycoupon")
def cart_apply_coupon(payload: ApplyCouponRequest, user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    total = carts.apply_coupon(db, str(user["_id"]), payload.coupon)
    return {"total_after_discount": total}


# Checkout & Orders
@app.post("/api/user/cart/create-order", status_code=201)
def create_order(payload: CreateOrderRequest, user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db), settings: Settings = Depends(get_settings),
                 gateway: EsewaGateway = Depends(get_gateway)):
    return orders.create_order(
        db, settings, gateway, str(user["_id"]), payload.shipping_info,
        cod=payload.cod, payment_method=payload.payment_method,
        coupon_applied=payload.coupon_applied, coupon_code=payload.coupon_code,
    )


@app.get("/api/user/orders")
def list_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"items": orders.list_user_orders(db, str(user["_id"]))}


@app.get("/api/user/orders/all")
def list_all_orders(status: Optional[str] = None, admin: dict = Depends(require_admin),
                    db: Database = Depends(get_db)):
    return {"items": orders.list_all_orders(db, status)}


@app.get("/api/user/orders/reconciliation")
def list_reconciliation(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"items": orders.list_reconciliation(db)}


@app.get("/api/user/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_user_order(db, order_id, user)


@app.put("/api/user/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, admin: dict = Depends(require_admin),
                        db: Database = Depends(get_db)):
    return orders.update_order_status(db, order_id, payload.status)


@app.delete("/api/user/orders/{order_id}")
def delete_order(order_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    orders.delete_order(db, order_id)
    return {"id": order_id, "deleted": True}


# eSewa callbacks
def _checkout_redirect(settings: Settings, **params) -> RedirectResponse:
    return RedirectResponse(f"{settings.frontend_url}/checkout?{urlencode(params)}", status_code=303)


@app.get("/api/esewa/payment-success")
def esewa_payment_success(data: Optional[str] = None, db: Database = Depends(get_db),
                          settings: Settings = Depends(get_settings),
                          gateway: EsewaGateway = Depends(get_gateway)):
    order, paid = orders.handle_payment_callback(db, gateway, data)
    if paid:
        return _checkout_redirect(settings, success="true", orderId=str(order["_id"]))
    return _checkout_redirect(settings, error="Payment not completed", orderId=str(order["_id"]))


@app.get("/api/esewa/payment-failure")
def esewa_payment_failure(transaction_uuid: str, db: Database = Depends(get_db),
                          settings: Settings = Depends(get_settings)):
    # plain browser redirect, nothing signed; it can only cancel a still-pending order
    logger.info("Payment failure redirect for transaction %s", transaction_uuid)
    orders.cancel_order(db, transaction_uuid)
    return _checkout_redirect(settings, error="Payment failed or was cancelled")


# Coupons
@app.get("/api/coupon/mine")
def my_coupons(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"items": coupons.list_user_coupons(db, str(user["_id"]))}


@app.post("/api/coupon", status_code=201)
def create_coupon(payload: CouponIn, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return coupons.create_coupon(db, payload.name, payload.expiry, payload.discount, payload.user_id)


@app.get("/api/coupon")
def list_coupons(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"items": coupons.list_coupons(db)}


@app.get("/api/coupon/{coupon_id}")
def get_coupon(coupon_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return coupons.get_coupon(db, coupon_id)


@app.put("/api/coupon/{coupon_id}")
def update_coupon(coupon_id: str, payload: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin),
                  db: Database = Depends(get_db)):
    return coupons.update_coupon(db, coupon_id, payload)


@app.delete("/api/coupon/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    deleted = coupons.delete_coupon(db, coupon_id)
    return {"message": "Coupon deleted successfully", "deleted_coupon": deleted}


# Revenue
@app.get("/api/revenue")
@app.get("/api/revenue/all")
def revenue(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return orders.revenue(db)


@app.get("/api/revenue/esewa")
def esewa_revenue(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"total": orders.revenue(db)["esewa"]}


if __name__ == "__main__":
    import uvicorn
    import os
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
