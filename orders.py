"""
Order submission: cart + checkout state -> order, order items, customer, payment.

Steps run strictly in order and nothing is rolled back. An order row can be
left behind in pending/pending if a later step fails; payment callbacks and
the pay-later page reconcile those. Stock is not touched here, it is
decremented once payment is confirmed.
"""
import logging
import random
import time
from typing import Optional, List, Dict, Any, Protocol

from pydantic import BaseModel

from cart import CartStore
from catalog import CatalogResolver
from checkout import CheckoutState, submission_details
from database import PersistenceError
from notifications import BestEffortChannel, Notifier
from payments import PaymentGateway, order_success_path, STORE_CURRENCY
from schemas import (
    Order, OrderItem, OrderItemMetadata, OrderMetadata, Customer, PaymentRequest, ShippingInfo,
)
from verification import HumanVerifier

logger = logging.getLogger(__name__)

GATEWAY_PAYMENT_METHOD = "moolre"
# no 0/O or 1/I
TRACKING_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_order_number(rng=random) -> str:
    return f"ORD-{int(time.time() * 1000)}-{rng.randrange(1000)}"


def generate_tracking_number(rng=random) -> str:
    return "SLI-" + "".join(rng.choice(TRACKING_ALPHABET) for _ in range(6))


class OrderRepository(Protocol):
    def insert_order(self, order: Order) -> dict: ...

    def insert_order_items(self, items: List[OrderItem]) -> List[dict]: ...

    def upsert_customer(self, customer: Customer) -> dict: ...

    def get_order(self, order_id: str) -> Optional[dict]: ...

    def get_order_by_number(self, order_number: str) -> Optional[dict]: ...

    def get_order_items(self, order_id: str) -> List[dict]: ...


class OrderSubmissionError(Exception):
    pass


class EmptyCartError(OrderSubmissionError):
    pass


class VerificationFailed(OrderSubmissionError):
    pass


class PaymentInitiationError(OrderSubmissionError):
    def __init__(self, message: str, order: dict):
        self.message = message
        self.order = order
        super().__init__(message)


class PlacedOrder(BaseModel):
    order: Dict[str, Any]
    items: List[Dict[str, Any]]
    order_number: str
    tracking_number: str
    redirect_url: str


class OrderSubmissionPipeline:
    def __init__(
        self,
        orders: OrderRepository,
        resolver: CatalogResolver,
        gateway: PaymentGateway,
        verifier: HumanVerifier,
        notifier: Notifier,
        channel: BestEffortChannel,
        currency: str = STORE_CURRENCY,
    ):
        self.orders = orders
        self.resolver = resolver
        self.gateway = gateway
        self.verifier = verifier
        self.notifier = notifier
        self.channel = channel
        self.currency = currency

    async def submit(self, cart: CartStore, checkout: CheckoutState, recaptcha_token: Optional[str]) -> PlacedOrder:
        # zero-quantity lines are pending removals
        lines = [line for line in cart.get() if line.quantity > 0]
        if not lines:
            raise EmptyCartError("Your cart is empty")
        shipping, delivery_method = submission_details(checkout)

        if not await self.verifier.verify(recaptcha_token, "checkout"):
            raise VerificationFailed("Security verification failed. Please try again.")

        order_number = generate_order_number()
        tracking_number = generate_tracking_number()
        totals = cart.totals()

        order = self.orders.insert_order(Order(
            order_number=order_number,
            user_id=checkout.user_id,
            email=shipping.email,
            phone=shipping.phone,
            currency=self.currency,
            subtotal=totals.subtotal,
            shipping_total=totals.shipping,
            discount_total=totals.discount,
            total=totals.total,
            shipping_method=delivery_method,
            payment_method=checkout.payment_method,
            shipping_address=shipping,
            billing_address=shipping,
            metadata=OrderMetadata(
                guest_checkout=not checkout.authenticated,
                first_name=shipping.first_name,
                last_name=shipping.last_name,
                tracking_number=tracking_number,
            ),
        ))
        logger.info("Order %s created (%s)", order_number, order["id"])

        resolved = self.resolver.resolve(lines)
        items = self.orders.insert_order_items([
            OrderItem(
                order_id=order["id"],
                product_id=resolved[line.product_id].id,
                product_name=line.name,
                variant_name=line.variant,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.unit_price * line.quantity,
                metadata=OrderItemMetadata(
                    image=line.image,
                    slug=line.slug,
                    preorder_shipping=resolved[line.product_id].preorder_shipping,
                ),
            )
            for line in lines
        ])

        self.orders.upsert_customer(customer_from_shipping(shipping, checkout.user_id))

        if checkout.payment_method == GATEWAY_PAYMENT_METHOD:
            result = await self.gateway.initiate(
                PaymentRequest(orderId=order_number, amount=totals.total, customerEmail=shipping.email)
            )
            if not result.success:
                message = result.message or "Payment initialization failed"
                logger.error("Payment initiation for %s failed: %s", order_number, message)
                raise PaymentInitiationError(message, order)
            redirect_url = result.url
        else:
            self.channel.dispatch(f"order_created:{order_number}", self.notifier.notify("order_created", order))
            redirect_url = order_success_path(order_number)

        # order and payment link already exist, keep the redirect
        try:
            cart.clear()
        except PersistenceError as e:
            logger.error("Could not clear cart %s after order %s: %s", cart.key, order_number, e)
        return PlacedOrder(
            order=order,
            items=items,
            order_number=order_number,
            tracking_number=tracking_number,
            redirect_url=redirect_url,
        )


def customer_from_shipping(shipping: ShippingInfo, user_id: Optional[str] = None) -> Customer:
    return Customer(
        email=shipping.email,
        phone=shipping.phone,
        full_name=f"{shipping.first_name} {shipping.last_name}".strip(),
        first_name=shipping.first_name,
        last_name=shipping.last_name,
        user_id=user_id,
        address=shipping,
    )
