import os
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from fastapi import FastAPI, HTTPException, Depends, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
import jwt
from passlib.context import CryptContext

from database import db, create_document, PersistenceError, MongoCartStorage, MongoOrderRepository, MongoProductCatalog
from schemas import User, SessionUser, CartItem, CartTotals, Coupon, PaymentRequest, PaymentResult, NotificationRequest, CheckoutType, DeliveryMethod
from cart import CartStore, CartError, InvalidCoupon
from catalog import CatalogResolver, ProductResolutionError
from checkout import (
    CheckoutState, CheckoutError, CheckoutSessionStore, GHANA_REGIONS,
    start_checkout, choose_checkout_type, update_shipping, advance, go_back, select_delivery, progress,
)
from orders import OrderSubmissionPipeline, EmptyCartError, VerificationFailed, PaymentInitiationError
from payments import MoolreGateway, PayLaterService, OrderNotFound
from notifications import BestEffortChannel, Notifier, LoggingMailer, NotificationError
from verification import RecaptchaVerifier

logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Storefront Checkout API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Process-wide collaborators
checkout_sessions = CheckoutSessionStore()
notification_channel = BestEffortChannel()
notifier = Notifier(LoggingMailer())


# Utilities
def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "exp": datetime.utcnow() + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(credentials.credentials)
    user = require_db()["user"].find_one({"_id": payload.get("sub")})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_session_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[SessionUser]:
    # Checkout works signed in or not; a bad token is still an error
    if credentials is None:
        return None
    user = await get_current_user(credentials)
    return SessionUser(id=str(user["_id"]), email=user.get("email"))


# Dependencies (overridden in tests)
def get_cart_storage():
    return MongoCartStorage(require_db())


def get_order_repository():
    return MongoOrderRepository(require_db())


def get_product_catalog():
    return MongoProductCatalog(require_db())


def get_payment_gateway():
    return MoolreGateway()


def get_verifier():
    return RecaptchaVerifier()


def get_pipeline(
    orders=Depends(get_order_repository),
    catalog=Depends(get_product_catalog),
    gateway=Depends(get_payment_gateway),
    verifier=Depends(get_verifier),
) -> OrderSubmissionPipeline:
    return OrderSubmissionPipeline(
        orders=orders,
        resolver=CatalogResolver(catalog),
        gateway=gateway,
        verifier=verifier,
        notifier=notifier,
        channel=notification_channel,
    )


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CartOut(BaseModel):
    items: List[CartItem]
    coupon: Optional[Coupon] = None
    totals: CartTotals
    open_mini_cart: bool = False


class QuantityIn(BaseModel):
    product_id: str
    quantity: int
    variant: Optional[str] = None


class LineRef(BaseModel):
    product_id: str
    variant: Optional[str] = None


class CouponIn(BaseModel):
    code: str


class CheckoutOut(BaseModel):
    state: CheckoutState
    step_index: int
    step_count: int
    regions: List[str] = GHANA_REGIONS


class CheckoutTypeIn(BaseModel):
    checkout_type: CheckoutType


class DeliveryIn(BaseModel):
    method: DeliveryMethod
    payment_method: Optional[str] = None


class PlaceOrderIn(BaseModel):
    recaptcha_token: Optional[str] = None


class PlaceOrderOut(BaseModel):
    order_id: str
    order_number: str
    tracking_number: str
    redirect_url: str


def cart_out(cart: CartStore, open_mini_cart: bool = False) -> CartOut:
    return CartOut(items=cart.get(), coupon=cart.coupon, totals=cart.totals(), open_mini_cart=open_mini_cart)


def checkout_out(state: CheckoutState) -> CheckoutOut:
    return CheckoutOut(state=state, **progress(state))


def load_checkout(cart_id: str) -> CheckoutState:
    state = checkout_sessions.get(cart_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    return state


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront Checkout API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest):
    users = require_db()["user"]
    if users.find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(name=payload.name, email=payload.email, hashed_password=hash_password(payload.password))
    try:
        inserted_id = create_document("user", user)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    doc = users.find_one({"_id": inserted_id})
    token = create_token(doc)
    return {"token": token, "user": {"id": inserted_id, "name": doc["name"], "email": doc["email"]}}


@app.post("/auth/login")
def login(payload: LoginRequest):
    user = require_db()["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_token(user)
    return {"token": token, "user": {"id": str(user["_id"]), "name": user["name"], "email": user["email"]}}


@app.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return {
        "id": str(current_user["_id"]),
        "name": current_user.get("name"),
        "email": current_user.get("email"),
    }


# Cart
@app.get("/api/cart/{cart_id}", response_model=CartOut)
def get_cart(cart_id: str, storage=Depends(get_cart_storage)):
    return cart_out(CartStore(storage, cart_id))


@app.post("/api/cart/{cart_id}/items", response_model=CartOut)
def cart_add(cart_id: str, item: CartItem, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    try:
        opened = cart.add(item)
    except CartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cart_out(cart, open_mini_cart=opened)


@app.patch("/api/cart/{cart_id}/items", response_model=CartOut)
def cart_set_quantity(cart_id: str, payload: QuantityIn, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.set_quantity(payload.product_id, payload.quantity, payload.variant)
    return cart_out(cart)


@app.post("/api/cart/{cart_id}/items/increment", response_model=CartOut)
def cart_increment(cart_id: str, line: LineRef, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.increment(line.product_id, line.variant)
    return cart_out(cart)


@app.post("/api/cart/{cart_id}/items/decrement", response_model=CartOut)
def cart_decrement(cart_id: str, line: LineRef, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.decrement(line.product_id, line.variant)
    return cart_out(cart)


@app.delete("/api/cart/{cart_id}/items", response_model=CartOut)
def cart_remove(cart_id: str, product_id: str, variant: Optional[str] = None, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.remove(product_id, variant)
    return cart_out(cart)


@app.delete("/api/cart/{cart_id}", response_model=CartOut)
def cart_clear(cart_id: str, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.clear()
    return cart_out(cart)


@app.post("/api/cart/{cart_id}/coupon", response_model=CartOut)
def cart_apply_coupon(cart_id: str, payload: CouponIn, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    try:
        cart.apply_coupon(payload.code)
    except InvalidCoupon as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cart_out(cart)


@app.delete("/api/cart/{cart_id}/coupon", response_model=CartOut)
def cart_remove_coupon(cart_id: str, storage=Depends(get_cart_storage)):
    cart = CartStore(storage, cart_id)
    cart.remove_coupon()
    return cart_out(cart)


# Checkout
@app.post("/api/checkout/{cart_id}", response_model=CheckoutOut)
async def checkout_start(cart_id: str, user: Optional[SessionUser] = Depends(get_session_user)):
    state = start_checkout(user)
    checkout_sessions.put(cart_id, state)
    return checkout_out(state)


@app.get("/api/checkout/{cart_id}", response_model=CheckoutOut)
def checkout_get(cart_id: str):
    return checkout_out(load_checkout(cart_id))


@app.put("/api/checkout/{cart_id}/type", response_model=CheckoutOut)
def checkout_type(cart_id: str, payload: CheckoutTypeIn):
    try:
        state = choose_checkout_type(load_checkout(cart_id), payload.checkout_type)
    except CheckoutError as e:
        raise HTTPException(status_code=409, detail=str(e))
    checkout_sessions.put(cart_id, state)
    return checkout_out(state)


@app.put("/api/checkout/{cart_id}/shipping", response_model=CheckoutOut)
def checkout_shipping(cart_id: str, changes: Dict[str, str] = Body(...)):
    try:
        state = update_shipping(load_checkout(cart_id), changes)
    except CheckoutError as e:
        raise HTTPException(status_code=409, detail=str(e))
    checkout_sessions.put(cart_id, state)
    return checkout_out(state)


@app.post("/api/checkout/{cart_id}/continue", response_model=CheckoutOut)
def checkout_continue(cart_id: str):
    state = advance(load_checkout(cart_id))
    checkout_sessions.put(cart_id, state)
    if state.step.kind == "shipping" and state.step.errors:
        raise HTTPException(status_code=422, detail={"message": "Please fix the highlighted fields", "errors": state.step.errors})
    return checkout_out(state)


@app.post("/api/checkout/{cart_id}/back", response_model=CheckoutOut)
def checkout_back(cart_id: str):
    state = go_back(load_checkout(cart_id))
    checkout_sessions.put(cart_id, state)
    return checkout_out(state)


@app.put("/api/checkout/{cart_id}/delivery", response_model=CheckoutOut)
def checkout_delivery(cart_id: str, payload: DeliveryIn):
    try:
        state = select_delivery(load_checkout(cart_id), payload.method, payload.payment_method)
    except CheckoutError as e:
        raise HTTPException(status_code=409, detail=str(e))
    checkout_sessions.put(cart_id, state)
    return checkout_out(state)


@app.post("/api/checkout/{cart_id}/place-order", response_model=PlaceOrderOut)
async def place_order(
    cart_id: str,
    payload: Optional[PlaceOrderIn] = None,
    storage=Depends(get_cart_storage),
    pipeline: OrderSubmissionPipeline = Depends(get_pipeline),
):
    state = load_checkout(cart_id)
    try:
        cart = CartStore(storage, cart_id)
        placed = await pipeline.submit(cart, state, payload.recaptcha_token if payload else None)
    except EmptyCartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CheckoutError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except VerificationFailed as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ProductResolutionError as e:
        raise HTTPException(status_code=400, detail=f"Failed to place order: {e}")
    except PaymentInitiationError as e:
        raise HTTPException(status_code=502, detail={
            "message": f"Failed to initialize payment: {e.message}",
            "order_id": e.order["id"],
            "order_number": e.order["order_number"],
        })
    except PersistenceError as e:
        logger.error("Checkout for cart %s failed: %s", cart_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to place order: {e}")
    checkout_sessions.drop(cart_id)
    return PlaceOrderOut(
        order_id=placed.order["id"],
        order_number=placed.order_number,
        tracking_number=placed.tracking_number,
        redirect_url=placed.redirect_url,
    )


# Payments
@app.post("/api/payment/moolre", response_model=PaymentResult)
async def payment_moolre(payload: PaymentRequest, gateway=Depends(get_payment_gateway)):
    return await gateway.initiate(payload)


@app.get("/api/pay/{order_id}")
def pay_later_lookup(order_id: str, orders=Depends(get_order_repository), gateway=Depends(get_payment_gateway)):
    try:
        return PayLaterService(orders, gateway).lookup(order_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Failed to load order: {e}")


@app.post("/api/pay/{order_id}", response_model=PaymentResult)
async def pay_later_pay(order_id: str, orders=Depends(get_order_repository), gateway=Depends(get_payment_gateway)):
    try:
        result = await PayLaterService(orders, gateway).pay_now(order_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Failed to load order: {e}")
    if not result.success:
        raise HTTPException(status_code=502, detail=result.message or "Failed to initialize payment")
    return result


# Orders
@app.get("/api/orders/{order_number}")
def get_order(order_number: str, orders=Depends(get_order_repository)):
    try:
        order = orders.get_order_by_number(order_number)
        if order:
            order["order_items"] = orders.get_order_items(order["id"])
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Failed to load order: {e}")
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# Notifications
@app.post("/api/notifications")
async def notifications(payload: NotificationRequest):
    try:
        message = await notifier.notify(payload.type, payload.payload)
    except NotificationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Notification API error")
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "message": message}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
