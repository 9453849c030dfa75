"""
Database Schemas for the Storefront Checkout API

Each persisted Pydantic model corresponds to a MongoDB collection. The collection name is the
snake_case of the class name.

Example: class OrderItem -> collection "order_item"
"""
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

CheckoutType = Literal["guest", "account"]
DeliveryMethod = Literal["pickup", "doorstep"]
NotificationType = Literal["order_created", "order_updated", "contact", "campaign"]

# Accounts

class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True


class SessionUser(BaseModel):
    id: str
    email: Optional[str] = None

# Catalog

class Product(BaseModel):
    id: str = Field(..., description="UUID string, stored as _id")
    title: str
    slug: str
    price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    moq: int = Field(1, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="preorder_shipping etc.")

# Cart

class CartItem(BaseModel):
    product_id: str = Field(..., description="Product UUID or slug")
    name: str
    unit_price: float = Field(..., ge=0)
    image: Optional[str] = None
    quantity: int = Field(1, ge=0)
    variant: Optional[str] = None
    slug: str
    max_stock: int = Field(..., ge=0)
    min_order_qty: int = Field(1, ge=1)


class Coupon(BaseModel):
    code: str
    amount: float = Field(..., ge=0)


class CartState(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    coupon: Optional[Coupon] = None


class CartTotals(BaseModel):
    count: int
    subtotal: float
    shipping: float
    discount: float
    total: float

# Checkout

class ShippingInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    region: str = ""

# Orders

class OrderMetadata(BaseModel):
    guest_checkout: bool
    first_name: str
    last_name: str
    tracking_number: str


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    email: str
    phone: str
    status: str = Field("pending", description="pending|processing|shipped|delivered|cancelled")
    payment_status: str = Field("pending", description="pending|paid|failed|refunded")
    currency: str = "GHS"
    subtotal: float
    tax_total: float = 0
    shipping_total: float = 0
    discount_total: float = 0
    total: float
    shipping_method: DeliveryMethod
    payment_method: str
    shipping_address: ShippingInfo
    billing_address: ShippingInfo
    metadata: OrderMetadata
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OrderItemMetadata(BaseModel):
    image: Optional[str] = None
    slug: Optional[str] = None
    preorder_shipping: Optional[Any] = None


class OrderItem(BaseModel):
    order_id: str
    product_id: str = Field(..., description="Canonical product UUID, never a slug")
    product_name: str
    variant_name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    metadata: OrderItemMetadata = Field(default_factory=OrderItemMetadata)


class Customer(BaseModel):
    email: str
    phone: str
    full_name: str
    first_name: str
    last_name: str
    user_id: Optional[str] = None
    address: ShippingInfo

# Payments (wire format of /api/payment/moolre)

class PaymentRequest(BaseModel):
    orderId: str = Field(..., min_length=1, description="Human order number")
    amount: float = Field(..., gt=0)
    customerEmail: str


class PaymentResult(BaseModel):
    success: bool
    url: Optional[str] = None
    message: Optional[str] = None

# Notifications

class NotificationRequest(BaseModel):
    type: str
    payload: Optional[Dict[str, Any]] = None
