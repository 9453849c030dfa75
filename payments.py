"""
Moolre mobile-money payment initiation.

The gateway only asks Moolre for a hosted payment link; order state is flipped
by Moolre's callback, never here. Calling it twice for the same order just
yields a fresh link.
"""
import os
import logging
from typing import Optional, Dict, Any, Protocol

import httpx

from schemas import PaymentRequest, PaymentResult

logger = logging.getLogger(__name__)

MOOLRE_API_URL = os.getenv("MOOLRE_API_URL", "https://api.moolre.com/embed/link")
MOOLRE_API_USER = os.getenv("MOOLRE_API_USER")
MOOLRE_API_PUBKEY = os.getenv("MOOLRE_API_PUBKEY")
MOOLRE_ACCOUNT_NUMBER = os.getenv("MOOLRE_ACCOUNT_NUMBER")
MOOLRE_CALLBACK_URL = os.getenv("MOOLRE_CALLBACK_URL")
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000")
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "GHS")


def order_success_path(order_number: str) -> str:
    return f"/order-success?order={order_number}"


class PaymentGateway(Protocol):
    async def initiate(self, request: PaymentRequest) -> PaymentResult: ...


class MoolreGateway:
    def __init__(
        self,
        api_url: str = MOOLRE_API_URL,
        api_user: Optional[str] = MOOLRE_API_USER,
        api_key: Optional[str] = MOOLRE_API_PUBKEY,
        account_number: Optional[str] = MOOLRE_ACCOUNT_NUMBER,
        callback_url: Optional[str] = MOOLRE_CALLBACK_URL,
        site_url: str = SITE_URL,
        currency: str = STORE_CURRENCY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_user = api_user
        self.api_key = api_key
        self.account_number = account_number
        self.callback_url = callback_url
        self.site_url = site_url.rstrip("/")
        self.currency = currency
        self.transport = transport

    def _body(self, request: PaymentRequest) -> Dict[str, Any]:
        return {
            "type": 1,
            "amount": request.amount,
            "email": request.customerEmail,
            "externalref": request.orderId,
            "callback": self.callback_url or f"{self.site_url}/api/payment/moolre/callback",
            "redirect": self.site_url + order_success_path(request.orderId),
            "reusable": "0",
            "currency": self.currency,
            "accountnumber": self.account_number,
            "metadata": {"order_number": request.orderId},
        }

    async def initiate(self, request: PaymentRequest) -> PaymentResult:
        if not (self.api_user and self.api_key and self.account_number):
            return PaymentResult(success=False, message="Payment gateway not configured")

        headers = {"X-API-USER": self.api_user, "X-API-PUBKEY": self.api_key}
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.post(self.api_url, json=self._body(request), headers=headers)
        except httpx.HTTPError as e:
            logger.error("Moolre request for %s failed: %s", request.orderId, e)
            return PaymentResult(success=False, message="Payment provider unreachable")

        try:
            data = resp.json()
        except ValueError:
            logger.error("Moolre returned non-JSON (%s) for %s", resp.status_code, request.orderId)
            return PaymentResult(success=False, message="Payment initialization failed")

        url = (data.get("data") or {}).get("authorization_url")
        if resp.is_error or str(data.get("status")) != "1" or not url:
            message = data.get("message") or "Payment initialization failed"
            logger.error("Moolre rejected %s: %s", request.orderId, message)
            return PaymentResult(success=False, message=message)
        return PaymentResult(success=True, url=url)


# Pay later: re-drive the gateway for an order that is still unpaid

class OrderNotFound(Exception):
    pass


class PayLaterService:
    def __init__(self, orders, gateway: PaymentGateway):
        self.orders = orders
        self.gateway = gateway

    def lookup(self, order_id: str) -> Dict[str, Any]:
        order = self.orders.get_order(order_id)
        if not order:
            raise OrderNotFound("Order not found")
        if order.get("payment_status") == "paid":
            return {"status": "paid", "redirect_url": order_success_path(order["order_number"])}
        order["order_items"] = self.orders.get_order_items(order["id"])
        return {"status": "awaiting_payment", "order": order}

    async def pay_now(self, order_id: str) -> PaymentResult:
        order = self.orders.get_order(order_id)
        if not order:
            raise OrderNotFound("Order not found")
        if order.get("payment_status") == "paid":
            return PaymentResult(success=True, url=order_success_path(order["order_number"]))
        return await self.gateway.initiate(
            PaymentRequest(orderId=order["order_number"], amount=order["total"], customerEmail=order["email"])
        )
