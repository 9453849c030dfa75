"""
Checkout orchestration as explicit step states.

Step 1 (ShippingStep) collects the address, step 2 (DeliveryStep) picks the
delivery method and hands off to order submission. Transitions are pure
functions returning a new CheckoutState, so they can be tested without the API.
"""
import re
import threading
from typing import Optional, Dict, Union, Literal

from pydantic import BaseModel, Field

from schemas import ShippingInfo, SessionUser, CheckoutType, DeliveryMethod

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
STEP_COUNT = 2
DEFAULT_PAYMENT_METHOD = "moolre"

REQUIRED_FIELDS = [
    ("first_name", "First name is required"),
    ("last_name", "Last name is required"),
    ("email", "Email is required"),
    ("phone", "Phone is required"),
    ("address", "Address is required"),
    ("city", "City is required"),
    ("region", "Region is required"),
]

GHANA_REGIONS = [
    "Greater Accra", "Ashanti", "Western", "Central", "Eastern", "Northern", "Volta",
    "Upper East", "Upper West", "Brong-Ahafo", "Ahafo", "Bono", "Bono East",
    "North East", "Savannah", "Oti", "Western North",
]


class CheckoutError(Exception):
    pass


class ShippingStep(BaseModel):
    kind: Literal["shipping"] = "shipping"
    data: ShippingInfo = Field(default_factory=ShippingInfo)
    errors: Dict[str, str] = Field(default_factory=dict)
    # remembered when the shopper comes back from step 2
    delivery_method: DeliveryMethod = "pickup"


class DeliveryStep(BaseModel):
    kind: Literal["delivery"] = "delivery"
    data: ShippingInfo
    method: DeliveryMethod = "pickup"


class CheckoutState(BaseModel):
    checkout_type: CheckoutType = "guest"
    user_id: Optional[str] = None
    email_locked: bool = False
    payment_method: str = DEFAULT_PAYMENT_METHOD
    step: Union[ShippingStep, DeliveryStep] = Field(default_factory=ShippingStep, discriminator="kind")

    @property
    def step_index(self) -> int:
        return 1 if self.step.kind == "shipping" else 2

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def validate_shipping(data: ShippingInfo) -> Dict[str, str]:
    errors = {}
    for field, message in REQUIRED_FIELDS:
        if not getattr(data, field).strip():
            errors[field] = message
    if "email" not in errors and not EMAIL_PATTERN.search(data.email):
        errors["email"] = "Invalid email"
    return errors


def start_checkout(user: Optional[SessionUser] = None) -> CheckoutState:
    if user is None:
        return CheckoutState()
    return CheckoutState(
        checkout_type="account",
        user_id=user.id,
        email_locked=True,
        step=ShippingStep(data=ShippingInfo(email=user.email or "")),
    )


def choose_checkout_type(state: CheckoutState, checkout_type: CheckoutType) -> CheckoutState:
    if checkout_type == "guest" and state.authenticated:
        raise CheckoutError("Guest checkout is not available while signed in")
    return state.model_copy(update={"checkout_type": checkout_type})


def update_shipping(state: CheckoutState, changes: Dict[str, str]) -> CheckoutState:
    if not isinstance(state.step, ShippingStep):
        raise CheckoutError("Shipping details can only be changed on the shipping step")
    changes = {k: v for k, v in changes.items() if k in ShippingInfo.model_fields}
    if state.email_locked:
        changes.pop("email", None)
    data = state.step.data.model_copy(update=changes)
    step = state.step.model_copy(update={"data": data})
    return state.model_copy(update={"step": step})


def advance(state: CheckoutState) -> CheckoutState:
    """Step 1 -> step 2 when the shipping data validates.

    On failure the state stays on step 1 with ``step.errors`` filled in.
    """
    step = state.step
    if isinstance(step, DeliveryStep):
        return state
    errors = validate_shipping(step.data)
    if errors:
        return state.model_copy(update={"step": step.model_copy(update={"errors": errors})})
    return state.model_copy(update={"step": DeliveryStep(data=step.data, method=step.delivery_method)})


def go_back(state: CheckoutState) -> CheckoutState:
    step = state.step
    if isinstance(step, ShippingStep):
        return state
    return state.model_copy(update={"step": ShippingStep(data=step.data, delivery_method=step.method)})


def select_delivery(state: CheckoutState, method: DeliveryMethod, payment_method: Optional[str] = None) -> CheckoutState:
    if not isinstance(state.step, DeliveryStep):
        raise CheckoutError("Delivery can only be chosen after shipping details")
    update = {"step": state.step.model_copy(update={"method": method})}
    if payment_method:
        update["payment_method"] = payment_method
    return state.model_copy(update=update)


def progress(state: CheckoutState) -> Dict[str, int]:
    return {"step_index": state.step_index, "step_count": STEP_COUNT}


def submission_details(state: CheckoutState):
    """(shipping, delivery method) for a checkout ready to place its order."""
    if not isinstance(state.step, DeliveryStep):
        raise CheckoutError("Complete shipping details before placing the order")
    return state.step.data, state.step.method


class CheckoutSessionStore:
    """In-process checkout sessions keyed by cart id. Lost on restart."""

    def __init__(self):
        self._sessions: Dict[str, CheckoutState] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CheckoutState]:
        with self._lock:
            return self._sessions.get(key)

    def put(self, key: str, state: CheckoutState):
        with self._lock:
            self._sessions[key] = state

    def drop(self, key: str):
        with self._lock:
            self._sessions.pop(key, None)
