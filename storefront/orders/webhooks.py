import json
import logging
from typing import Optional

from storefront.shared.utils import settings
from storefront.orders.checkout import release_order_stock
from storefront.orders.models import OrderDB, PaymentStatus, FulfillmentStatus
from storefront.orders.schemas import GatewayEvent
from storefront.orders.stores import Stores

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """
    Applies payment gateway events to the order ledger.

    Once the signature checks out, every delivery is acknowledged, whether or
    not an order matches it.
    Handlers compare before writing, so replaying an event changes nothing.
    Events are applied in arrival order (last write wins).
    """

    def __init__(self, stores: Stores, gateway, restore_stock_on_failure: Optional[bool] = None):
        self.stores = stores
        self.gateway = gateway
        if restore_stock_on_failure is None:
            restore_stock_on_failure = settings.RESTORE_STOCK_ON_PAYMENT_FAILURE
        self.restore_stock_on_failure = restore_stock_on_failure
        self._handlers = {
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
            "charge.refunded": self.handle_charge_refunded,
        }

    async def handle(self, payload: bytes, signature: Optional[str]) -> None:
        # Raises WebhookSignatureError before anything in the body is trusted
        body = self.gateway.verify_signature(payload, signature)

        try:
            event = GatewayEvent(**json.loads(body))
        except (ValueError, TypeError) as e:
            logger.error(f"Malformed webhook event: {e}")
            return

        extra = {"event_id": event.id, "event_type": event.type}
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.type}", extra=extra)
            return
        await handler(event.data.object, extra)

    async def _order_from_metadata(self, intent: dict, extra: dict) -> Optional[OrderDB]:
        order_id = (intent.get("metadata") or {}).get("order_id")
        if not order_id:
            logger.error("No order_id in PaymentIntent metadata", extra=extra)
            return None
        order = await self.stores.orders.get(order_id)
        if not order:
            logger.error(f"Order {order_id} not found", extra={**extra, "order_id": order_id})
        return order

    async def handle_payment_succeeded(self, intent: dict, extra: dict) -> None:
        order = await self._order_from_metadata(intent, extra)
        if not order:
            return
        extra = {**extra, "order_id": order.id}

        charge_id = intent.get("latest_charge")
        if isinstance(charge_id, dict):
            charge_id = charge_id.get("id")

        if order.payment_status == PaymentStatus.PAID and order.charge_id == charge_id:
            logger.info(f"Order {order.id} already marked as paid", extra=extra)
            return

        await self.stores.orders.update(order.id, {
            "payment_status": PaymentStatus.PAID.value,
            "charge_id": charge_id,
        })
        logger.info(f"Order {order.id} marked as paid", extra=extra)

    async def handle_payment_failed(self, intent: dict, extra: dict) -> None:
        order = await self._order_from_metadata(intent, extra)
        if not order:
            return
        extra = {**extra, "order_id": order.id}

        if (order.payment_status == PaymentStatus.FAILED
                and order.fulfillment_status == FulfillmentStatus.CANCELLED):
            logger.info(f"Order {order.id} already marked as failed", extra=extra)
            return

        changes = {
            "payment_status": PaymentStatus.FAILED.value,
            "fulfillment_status": FulfillmentStatus.CANCELLED.value,
        }

        if self.restore_stock_on_failure:
            # Restore only if this event is what moved the order out of processing
            updated = await self.stores.orders.update(
                order.id, changes, expected={"fulfillment_status": FulfillmentStatus.PROCESSING.value}
            )
            if updated:
                await release_order_stock(self.stores, updated)
                logger.info(f"Order {order.id} marked as failed, stock restored", extra=extra)
                return

        # TODO: restore reserved stock here by default once the owners confirm failed payments should restock
        await self.stores.orders.update(order.id, changes)
        logger.info(f"Order {order.id} marked as failed", extra=extra)

    async def handle_charge_refunded(self, charge: dict, extra: dict) -> None:
        charge_id = charge.get("id")
        order = await self.stores.orders.find_by_charge_id(charge_id) if charge_id else None
        if not order:
            logger.error(f"Order with charge {charge_id} not found", extra=extra)
            return
        extra = {**extra, "order_id": order.id}

        if order.payment_status == PaymentStatus.REFUNDED:
            logger.info(f"Order {order.id} already marked as refunded", extra=extra)
            return

        # Refunds leave stock untouched
        await self.stores.orders.update(order.id, {"payment_status": PaymentStatus.REFUNDED.value})
        logger.info(f"Order {order.id} marked as refunded", extra=extra)
