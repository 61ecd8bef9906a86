"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class SaleProduct -> collection "saleproduct"
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

# Order lifecycle values

PENDING = "Pending"
PROCESSING = "Processing"
CANCELLED = "Cancelled"
DISPATCHED = "Dispatched"
DELIVERED = "Delivered"
NOT_PROCESSED = "Not Processed"
CASH_ON_DELIVERY = "Cash on Delivery"

ORDER_STATUSES = (PENDING, PROCESSING, CANCELLED, DISPATCHED, DELIVERED, NOT_PROCESSED, CASH_ON_DELIVERY)

PAYMENT_PENDING = "Pending"
PAYMENT_COMPLETED = "Completed"
PAYMENT_FAILED = "Failed"
PAYMENT_COD = "Cash on Delivery"

METHOD_COD = "COD"
METHOD_ESEWA = "eSewa"

# Core domain models

class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    mobile: Optional[str] = None
    address: Optional[str] = None
    role: Literal["user", "admin"] = "user"
    is_blocked: bool = False

class Rating(BaseModel):
    star: int = Field(..., ge=1, le=5)
    comment: str = ""
    posted_by: str

class Product(BaseModel):
    title: str
    slug: str
    description: str
    price: float = Field(..., ge=0)
    category: str
    brand: str
    color: str
    quantity: int = Field(0, ge=0)
    sold: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    ratings: List[Rating] = Field(default_factory=list)
    total_rating: float = 0

class SaleProduct(Product):
    sale_price: float = Field(..., ge=0)

class CartItem(BaseModel):
    product_id: str
    count: int = Field(1, ge=1)
    color: Optional[str] = None
    price: float = Field(..., ge=0)

class Cart(BaseModel):
    user_id: str
    products: List[CartItem] = Field(default_factory=list)
    cart_total: float = 0
    # two-decimal string, e.g. "900.00"
    total_after_discount: Optional[str] = None

class ShippingInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)

class PaymentIntent(BaseModel):
    id: str
    method: str
    amount: float
    status: str
    created: datetime = Field(default_factory=datetime.utcnow)
    currency: str = "NPR"
    transaction_code: Optional[str] = None

class Order(BaseModel):
    user_id: str
    products: List[CartItem]
    payment_intent: PaymentIntent
    order_status: str = NOT_PROCESSED
    coupon_id: Optional[str] = None
    total_after_discount: float
    delivery_charge: float
    total_with_delivery: float
    shipping_info: ShippingInfo
    needs_reconciliation: bool = False
    settlement_error: Optional[str] = None

class Coupon(BaseModel):
    name: str
    expiry: datetime
    discount: int = Field(..., ge=1, le=100)
    user_id: Optional[str] = None
