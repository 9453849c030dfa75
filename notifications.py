import asyncio
import logging
from typing import Any, Dict, Optional, Awaitable, Protocol, Set, get_args

from schemas import NotificationType

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = get_args(NotificationType)


class NotificationError(Exception):
    pass


# Best-effort side channel

class FailureSink(Protocol):
    def failure(self, label: str, exc: BaseException) -> None: ...


class LoggingSink:
    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def failure(self, label: str, exc: BaseException) -> None:
        self.log.error("Best-effort task %s failed: %s", label, exc, exc_info=exc)


class BestEffortChannel:
    """Runs awaitables without making the caller wait for them.

    Failures never reach the caller; they are reported to the sink.
    """

    def __init__(self, sink: Optional[FailureSink] = None):
        self.sink = sink or LoggingSink()
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, label: str, work: Awaitable) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(label, work))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, label: str, work: Awaitable):
        try:
            await work
        except Exception as exc:
            self.sink.failure(label, exc)

    async def drain(self):
        while self._pending:
            await asyncio.gather(*list(self._pending))


# Delivery. Templating and transport belong to the mailer.

class Mailer(Protocol):
    async def send_order_confirmation(self, order: Dict[str, Any]) -> None: ...

    async def send_order_status_update(self, order: Dict[str, Any], status: str) -> None: ...

    async def send_contact_message(self, payload: Dict[str, Any]) -> None: ...

    async def send_campaign(self, payload: Dict[str, Any]) -> None: ...


class LoggingMailer:
    async def send_order_confirmation(self, order):
        logger.info("Order confirmation for %s to %s", order.get("order_number"), order.get("email"))

    async def send_order_status_update(self, order, status):
        logger.info("Order %s status update: %s", order.get("order_number"), status)

    async def send_contact_message(self, payload):
        logger.info("Contact message from %s", payload.get("email"))

    async def send_campaign(self, payload):
        logger.info("Campaign %s queued", payload.get("name") or payload.get("id"))


class Notifier:
    def __init__(self, mailer: Mailer):
        self.mailer = mailer

    async def notify(self, kind: str, payload: Optional[Dict[str, Any]]) -> str:
        if not payload:
            raise NotificationError("Payload required")
        if kind not in NOTIFICATION_TYPES:
            raise NotificationError("Invalid notification type")
        if kind == "order_created":
            await self.mailer.send_order_confirmation(payload)
            return "Order confirmation sent"
        if kind == "order_updated":
            order, status = payload.get("order"), payload.get("status")
            if not order or not status:
                raise NotificationError("order_updated needs order and status")
            await self.mailer.send_order_status_update(order, status)
            return "Status update sent"
        if kind == "contact":
            await self.mailer.send_contact_message(payload)
            return "Contact message sent"
        await self.mailer.send_campaign(payload)
        return "Campaign sent"
