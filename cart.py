"""
Cart store: the line items of one shopper's cart plus derived totals.

Every mutation is written straight back to the storage backend as a serialized
CartState. Storage is anything with ``load(key)`` / ``save(key, raw)``; the API
uses MongoDB (database.MongoCartStorage), tests use MemoryCartStorage.
"""
import logging
from typing import Optional, List, Dict, Protocol

from pydantic import ValidationError

from schemas import CartItem, CartState, CartTotals, Coupon

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = 500
FLAT_SHIPPING_FEE = 50

# Placeholder coupon table, code -> fixed amount off
COUPONS: Dict[str, float] = {
    "WELCOME20": 20,
}


class CartError(Exception):
    pass


class InvalidCoupon(CartError):
    pass


class CartStorage(Protocol):
    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, raw: str) -> None: ...


class MemoryCartStorage:
    def __init__(self):
        self.data: Dict[str, str] = {}

    def load(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def save(self, key: str, raw: str) -> None:
        self.data[key] = raw


def compute_totals(items: List[CartItem], coupon: Optional[Coupon] = None) -> CartTotals:
    subtotal = sum(it.unit_price * it.quantity for it in items)
    shipping = 0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_FEE
    discount = coupon.amount if coupon else 0
    return CartTotals(
        count=sum(it.quantity for it in items),
        subtotal=subtotal,
        shipping=shipping,
        discount=discount,
        total=subtotal + shipping - discount,
    )


class CartStore:
    def __init__(self, storage: CartStorage, key: str = "cart"):
        self.storage = storage
        self.key = key
        self.items: List[CartItem] = []
        self.coupon: Optional[Coupon] = None
        self._restore()

    def _restore(self):
        raw = self.storage.load(self.key)
        if not raw:
            return
        try:
            state = CartState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable cart %s: %s", self.key, e)
            return
        self.items = state.items
        self.coupon = state.coupon

    def _persist(self):
        state = CartState(items=self.items, coupon=self.coupon)
        self.storage.save(self.key, state.model_dump_json())

    def _find(self, product_id: str, variant: Optional[str]) -> Optional[CartItem]:
        for it in self.items:
            if it.product_id == product_id and it.variant == variant:
                return it
        return None

    def get(self) -> List[CartItem]:
        return [it.model_copy() for it in self.items]

    def is_empty(self) -> bool:
        return not self.items

    def add(self, item: CartItem) -> bool:
        """Merge ``item`` into the cart by (product_id, variant).

        Returns True as the signal to open the mini cart.
        """
        if item.quantity < 1:
            raise CartError("Quantity must be at least 1")
        existing = self._find(item.product_id, item.variant)
        if existing:
            existing.quantity = min(existing.quantity + item.quantity, existing.max_stock)
        else:
            line = item.model_copy()
            # not enough stock to meet the minimum order quantity
            if line.max_stock < line.min_order_qty:
                raise CartError(f"{item.name} is out of stock")
            line.quantity = min(max(line.quantity, line.min_order_qty), line.max_stock)
            self.items.append(line)
        self._persist()
        return True

    def remove(self, product_id: str, variant: Optional[str] = None):
        self.items = [it for it in self.items if not (it.product_id == product_id and it.variant == variant)]
        self._persist()

    def set_quantity(self, product_id: str, quantity: int, variant: Optional[str] = None):
        # 0 is kept as a line; callers treat it as intent to remove
        line = self._find(product_id, variant)
        if line is None:
            return
        line.quantity = min(max(0, quantity), line.max_stock)
        self._persist()

    def increment(self, product_id: str, variant: Optional[str] = None):
        line = self._find(product_id, variant)
        if line is None:
            return
        self.set_quantity(product_id, line.quantity + 1, variant)

    def decrement(self, product_id: str, variant: Optional[str] = None):
        line = self._find(product_id, variant)
        if line is None:
            return
        if line.quantity <= line.min_order_qty:
            self.remove(product_id, variant)
        else:
            self.set_quantity(product_id, line.quantity - 1, variant)

    def clear(self):
        self.items = []
        self.coupon = None
        self._persist()

    def apply_coupon(self, code: str) -> Coupon:
        amount = COUPONS.get(code)
        if amount is None:
            raise InvalidCoupon("Invalid coupon code")
        self.coupon = Coupon(code=code, amount=amount)
        self._persist()
        return self.coupon

    def remove_coupon(self):
        self.coupon = None
        self._persist()

    def totals(self) -> CartTotals:
        return compute_totals(self.items, self.coupon)
