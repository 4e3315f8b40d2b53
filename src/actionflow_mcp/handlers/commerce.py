"""Order and payment handlers.

Both derive their external reference from the attempt's idempotency key,
so re-running an attempt after a crash between execute and commit hands the
same reference to the downstream system instead of placing a second order
or charge.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from actionflow_mcp.errors import HandlerError
from actionflow_mcp.handlers.base import AttemptContext, Handler, HandlerResult
from actionflow_mcp.models.work_item import WorkItemKind

logger = logging.getLogger(__name__)


class SimulatedLedger:
    """In-process stand-in for an order system or payment gateway.

    Submissions are keyed by reference; repeating a reference returns the
    original record instead of creating a new one.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.submissions = 0
        self._mu = asyncio.Lock()

    async def submit(self, reference: str, record: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        async with self._mu:
            self.submissions += 1
            if reference in self.records:
                return self.records[reference], False
            self.records[reference] = record
            return record, True


class OrderHandler(Handler):
    kind = WorkItemKind.ORDER
    retry_safe = True

    def __init__(self, order_system: SimulatedLedger | None = None):
        self.order_system = order_system or SimulatedLedger()

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "product")
        quantity = int(payload.get("quantity", 1))
        price = float(payload.get("price", 0))
        if quantity < 1:
            raise HandlerError(f"Order quantity must be positive, got {quantity}")
        if price < 0:
            raise HandlerError(f"Order price cannot be negative, got {price}")

        order_id = f"ORD-{context.idempotency_key[:12].upper()}"
        record = {
            "order_id": order_id,
            "product": payload["product"],
            "quantity": quantity,
            "total": round(price * quantity, 2),
            "vendor": payload.get("vendor"),
            "delivery_address": payload.get("delivery_address"),
            "payment_method": payload.get("payment_method"),
            "status": "confirmed",
            "estimated_delivery": (
                datetime.now(timezone.utc) + timedelta(hours=24)
            ).isoformat(),
        }
        stored, created = await self.order_system.submit(order_id, record)
        if not created:
            logger.info("Order %s already placed, reusing it", order_id)
        else:
            logger.info("Order placed: %s x%d (%s)", payload["product"], quantity, order_id)
        return HandlerResult(summary=f"Order {order_id} confirmed", data=stored)


class PaymentHandler(Handler):
    kind = WorkItemKind.PAYMENT
    retry_safe = True

    def __init__(self, gateway: SimulatedLedger | None = None, default_currency: str = "INR"):
        self.gateway = gateway or SimulatedLedger()
        self.default_currency = default_currency

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "amount", "recipient")
        amount = float(payload["amount"])
        if amount <= 0:
            raise HandlerError(f"Payment amount must be positive, got {amount}")
        currency = payload.get("currency") or self.default_currency

        transaction_id = f"TXN-{context.idempotency_key.upper()}"
        record = {
            "transaction_id": transaction_id,
            "amount": amount,
            "currency": currency,
            "recipient": payload["recipient"],
            "method": payload.get("method"),
            "description": payload.get("description"),
            "fee": round(amount * 0.029 + 0.30, 2),
            "status": "completed",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        stored, created = await self.gateway.submit(transaction_id, record)
        if not created:
            logger.info("Payment %s already settled, not charging again", transaction_id)
        else:
            logger.info("Payment processed: %.2f %s (%s)", amount, currency, transaction_id)
        return HandlerResult(
            summary=f"Paid {amount:.2f} {currency} to {payload['recipient']} ({transaction_id})",
            data=stored,
        )
