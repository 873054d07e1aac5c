"""
Checkout and cancellation.

Checkout runs as a compensating saga over single-document writes: every
step that leaves a durable effect registers how to undo it, and any failure
unwinds the registered steps in reverse before the error reaches the
caller. Stock is reserved with a conditional decrement, so two checkouts
racing for the last unit cannot both succeed.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from storefront.shared.utils import (
    settings, BadRequestException, NotFoundException, ForbiddenException, InternalException
)
from storefront.orders.models import (
    AddressDB, CartItemDB, OrderDB, OrderItemDB, PaymentStatus, FulfillmentStatus
)
from storefront.orders.pricing import calculate_shipping, calculate_tax
from storefront.orders.stores import Stores

logger = logging.getLogger(__name__)

SUPPORTED_PAYMENT_METHODS = ("stripe",)


class EmptyCart(BadRequestException):
    def __init__(self, detail: str = "Cart is empty"):
        super().__init__(detail=detail)

class ProductUnavailable(BadRequestException):
    pass

class VariantNotFound(BadRequestException):
    pass

class InsufficientStock(BadRequestException):
    pass

class InvalidState(BadRequestException):
    pass


@dataclass
class CheckoutResult:
    order: OrderDB
    client_secret: str
    publishable_key: str


class Compensations:
    """Undo actions for the steps a checkout has completed so far."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        self._steps: List[Tuple[str, Callable[..., Awaitable], tuple]] = []

    def add(self, name: str, func: Callable[..., Awaitable], *args) -> None:
        self._steps.append((name, func, args))

    async def run(self) -> None:
        for name, func, args in reversed(self._steps):
            try:
                await func(*args)
                logger.info(f"Compensated: {name}", extra={"order_id": self.order_id})
            except Exception:
                # Keep unwinding; the remaining steps still need undoing
                logger.error(
                    f"Compensation failed: {name}", extra={"order_id": self.order_id}, exc_info=True
                )
        self._steps.clear()


async def release_order_stock(stores: Stores, order: OrderDB) -> None:
    """Put every line item's quantity back on its stock counter."""
    failed = []
    for item in order.items:
        try:
            released = await stores.catalog.release_stock(item.product_id, item.quantity, item.sku)
        except Exception:
            logger.error(
                f"Failed to restore stock for product {item.product_id}",
                extra={"order_id": order.id}, exc_info=True
            )
            failed.append(item.product_id)
            continue
        if not released:
            # Product or variant was removed from the catalog since checkout
            logger.warning(
                f"Nothing to restore for product {item.product_id} sku={item.sku}",
                extra={"order_id": order.id}
            )
    if failed:
        raise InternalException(f"Stock restoration incomplete for order {order.id}")


class CheckoutService:
    def __init__(self, stores: Stores, gateway, currency: str = settings.CURRENCY):
        self.stores = stores
        self.gateway = gateway
        self.currency = currency.upper()

    async def _reserve_items(
        self, cart_items: List[CartItemDB], undo: Compensations
    ) -> Tuple[List[OrderItemDB], int]:
        order_items = []
        subtotal = 0

        for item in cart_items:
            # Always the live record, never the cart's snapshot
            product = await self.stores.catalog.get_product(item.product_id)
            if product is None or not product.is_active:
                label = product.name if product else item.product_id
                raise ProductUnavailable(f"Product {label} is no longer available")

            available = product.stock
            price = product.price
            if item.variant_sku:
                variant = product.find_variant(item.variant_sku)
                if variant is None:
                    raise VariantNotFound(f"Variant not found for {product.name}")
                available = variant.stock
                if variant.price is not None:
                    price = variant.price

            if available < item.quantity:
                raise InsufficientStock(f"Insufficient stock for {product.name}")

            reserved = await self.stores.catalog.reserve_stock(product.id, item.quantity, item.variant_sku)
            if not reserved:
                # Someone else took the stock between our read and the update
                raise InsufficientStock(f"Insufficient stock for {product.name}")
            undo.add(
                f"release {item.quantity} x {product.id} sku={item.variant_sku}",
                self.stores.catalog.release_stock, product.id, item.quantity, item.variant_sku
            )

            subtotal += price * item.quantity
            order_items.append(OrderItemDB(
                product_id=product.id,
                name=product.name,
                sku=item.variant_sku,
                quantity=item.quantity,
                price=price
            ))

        return order_items, subtotal

    async def checkout(
        self,
        user_id: str,
        shipping_address: AddressDB,
        billing_address: Optional[AddressDB] = None,
        payment_method: str = "stripe",
    ) -> CheckoutResult:
        if payment_method not in SUPPORTED_PAYMENT_METHODS:
            raise BadRequestException(f"Unsupported payment method: {payment_method}")

        cart = await self.stores.carts.get(user_id=user_id)
        if not cart or not cart.items:
            raise EmptyCart()

        order_id = self.stores.orders.new_id()
        log_extra = {"order_id": order_id, "user_id": user_id}
        logger.info("Checkout started", extra=log_extra)

        undo = Compensations(order_id)
        try:
            order_items, subtotal = await self._reserve_items(cart.items, undo)

            shipping_cost = calculate_shipping(len(cart.items), subtotal)
            tax = calculate_tax(subtotal)

            order = await self.stores.orders.insert(OrderDB(
                id=order_id,
                user_id=user_id,
                items=order_items,
                shipping_address=shipping_address,
                billing_address=billing_address or shipping_address,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                tax=tax,
                total=subtotal + shipping_cost + tax,
                currency=self.currency,
            ))
            undo.add("delete order", self.stores.orders.delete, order.id)

            intent = await self.gateway.create_payment_intent(
                amount=order.total,
                currency=order.currency,
                metadata={"order_id": order.id, "user_id": user_id},
                idempotency_key=f"checkout-{order.id}",
            )
            undo.add("cancel payment intent", self.gateway.cancel_payment_intent, intent.id)

            order = await self.stores.orders.update(order.id, {"payment_intent_id": intent.id})
            if order is None:
                raise InternalException("Order disappeared during checkout")

            await self.stores.carts.clear(cart.id)
        except BaseException as e:
            # Cancellation unwinds too; a second cancel must not cut the unwind short
            logger.warning(f"Checkout failed, rolling back: {e!r}", extra=log_extra)
            await asyncio.shield(undo.run())
            raise

        logger.info("Checkout committed", extra={**log_extra, "total": order.total})
        return CheckoutResult(
            order=order,
            client_secret=intent.client_secret,
            publishable_key=self.gateway.publishable_key,
        )

    async def cancel(self, order_id: str, user_id: str) -> OrderDB:
        order = await self.stores.orders.get(order_id)
        if not order:
            raise NotFoundException("Order not found")
        if order.user_id != user_id:
            raise ForbiddenException("Access denied")
        if order.payment_status == PaymentStatus.PAID:
            raise InvalidState("Cannot cancel paid order. Request a refund instead.")
        if order.fulfillment_status != FulfillmentStatus.PROCESSING:
            raise InvalidState("Order cannot be cancelled at this stage")

        # Only the caller whose transition lands restores stock
        cancelled = await self.stores.orders.update(
            order_id,
            {
                "fulfillment_status": FulfillmentStatus.CANCELLED.value,
                "payment_status": PaymentStatus.FAILED.value,
            },
            expected={
                "user_id": user_id,
                "fulfillment_status": FulfillmentStatus.PROCESSING.value,
                "payment_status": {"$ne": PaymentStatus.PAID.value},
            },
        )
        if cancelled is None:
            raise InvalidState("Order cannot be cancelled at this stage")

        await release_order_stock(self.stores, cancelled)
        logger.info("Order cancelled", extra={"order_id": order_id, "user_id": user_id})
        return cancelled
