"""Pytest fixtures: in-memory stores and a gateway that never leaves the process."""
import asyncio
import hashlib
import hmac
import os
import time
from datetime import datetime
from typing import Optional, List

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from storefront.shared.utils import create_access_token
from storefront.orders.models import AddressDB, ProductDB, CartDB, CartItemDB, OrderDB
from storefront.orders.gateway import StripeGateway, PaymentIntent, PaymentGatewayError
from storefront.orders.stores import Stores
from storefront.orders.checkout import CheckoutService
from storefront.orders.webhooks import WebhookReconciler

WEBHOOK_SECRET = "whsec_test_secret"
PUBLISHABLE_KEY = "pk_test_123"


def _matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict) and "$ne" in cond:
            if value == cond["$ne"]:
                return False
        elif value != cond:
            return False
    return True


class InMemoryCatalog:
    def __init__(self):
        self.products = {}

    def add_product(self, name: str, price: int, stock: int = 0, variants=None, is_active: bool = True) -> str:
        product = ProductDB(
            _id=str(ObjectId()), name=name, price=price, stock=stock,
            variants=variants or [], is_active=is_active
        )
        self.products[product.id] = product.model_dump(by_alias=True)
        return product.id

    def stock_of(self, product_id: str, sku: Optional[str] = None) -> int:
        doc = self.products[product_id]
        if sku:
            return next(v["stock"] for v in doc["variants"] if v["sku"] == sku)
        return doc["stock"]

    async def get_product(self, product_id: str) -> Optional[ProductDB]:
        await asyncio.sleep(0)
        doc = self.products.get(product_id)
        return ProductDB(**doc) if doc else None

    async def reserve_stock(self, product_id: str, quantity: int, sku: Optional[str] = None) -> bool:
        await asyncio.sleep(0)
        # No awaits below: the check and the decrement happen as one step
        doc = self.products.get(product_id)
        if not doc or not doc["is_active"]:
            return False
        target = doc
        if sku:
            target = next((v for v in doc["variants"] if v["sku"] == sku), None)
            if target is None:
                return False
        if target["stock"] < quantity:
            return False
        target["stock"] -= quantity
        return True

    async def release_stock(self, product_id: str, quantity: int, sku: Optional[str] = None) -> bool:
        await asyncio.sleep(0)
        doc = self.products.get(product_id)
        if not doc:
            return False
        target = doc
        if sku:
            target = next((v for v in doc["variants"] if v["sku"] == sku), None)
            if target is None:
                return False
        target["stock"] += quantity
        return True


class InMemoryCarts:
    def __init__(self):
        self.carts = {}

    def put(self, user_id: str, items: List[CartItemDB]) -> CartDB:
        cart = CartDB(_id=str(ObjectId()), user_id=user_id, items=items)
        self.carts[cart.id] = cart.model_dump(by_alias=True)
        return cart

    async def get(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[CartDB]:
        await asyncio.sleep(0)
        query = {"user_id": user_id} if user_id else {"session_id": session_id}
        for doc in self.carts.values():
            if _matches(doc, query):
                return CartDB(**doc)
        return None

    async def get_or_create(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> CartDB:
        cart = await self.get(user_id, session_id)
        if cart:
            return cart
        cart = CartDB(_id=str(ObjectId()), user_id=user_id, session_id=session_id)
        self.carts[cart.id] = cart.model_dump(by_alias=True)
        return cart

    async def set_items(self, cart_id: str, items: List[CartItemDB]) -> None:
        await asyncio.sleep(0)
        self.carts[cart_id]["items"] = [i.model_dump() for i in items]
        self.carts[cart_id]["updated_at"] = datetime.utcnow()

    async def clear(self, cart_id: str) -> None:
        await self.set_items(cart_id, [])

    def items_of(self, user_id: str) -> list:
        for doc in self.carts.values():
            if doc["user_id"] == user_id:
                return doc["items"]
        return []


class InMemoryLedger:
    def __init__(self):
        self.orders = {}
        self.fail_insert = False

    def new_id(self) -> str:
        return str(ObjectId())

    async def insert(self, order: OrderDB) -> OrderDB:
        await asyncio.sleep(0)
        if self.fail_insert:
            raise RuntimeError("write failed")
        doc = order.model_dump(by_alias=True)
        self.orders[doc["_id"]] = doc
        return OrderDB(**doc)

    async def get(self, order_id: str) -> Optional[OrderDB]:
        await asyncio.sleep(0)
        doc = self.orders.get(order_id)
        return OrderDB(**doc) if doc else None

    async def find_by_charge_id(self, charge_id: str) -> Optional[OrderDB]:
        await asyncio.sleep(0)
        for doc in self.orders.values():
            if doc.get("charge_id") == charge_id:
                return OrderDB(**doc)
        return None

    async def update(self, order_id: str, changes: dict, expected: Optional[dict] = None) -> Optional[OrderDB]:
        await asyncio.sleep(0)
        doc = self.orders.get(order_id)
        if not doc or (expected and not _matches(doc, expected)):
            return None
        doc.update(changes)
        doc["updated_at"] = datetime.utcnow()
        return OrderDB(**doc)

    async def delete(self, order_id: str) -> None:
        await asyncio.sleep(0)
        self.orders.pop(order_id, None)

    async def list(self, query: dict, page: int = 1, limit: int = 10):
        await asyncio.sleep(0)
        docs = [d for d in self.orders.values() if _matches(d, query)]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        skip = (page - 1) * limit
        return [OrderDB(**d) for d in docs[skip:skip + limit]], len(docs)

    def raw(self, order_id: str) -> dict:
        return self.orders[order_id]


class FakeGateway(StripeGateway):
    """Real signature verification, in-process payment intents."""

    def __init__(self):
        super().__init__(
            secret_key="sk_test_123",
            publishable_key=PUBLISHABLE_KEY,
            webhook_secret=WEBHOOK_SECRET,
            timeout=1.0,
        )
        self.created = []
        self.cancelled = []
        self.fail_create = False

    async def create_payment_intent(
        self, amount: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        await asyncio.sleep(0)
        if self.fail_create:
            raise PaymentGatewayError()
        intent = PaymentIntent(id=f"pi_{len(self.created) + 1}", client_secret=f"pi_{len(self.created) + 1}_secret")
        self.created.append({
            "id": intent.id, "amount": amount, "currency": currency,
            "metadata": metadata, "idempotency_key": idempotency_key,
        })
        return intent

    async def cancel_payment_intent(self, intent_id: str) -> None:
        await asyncio.sleep(0)
        self.cancelled.append(intent_id)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stores() -> Stores:
    return Stores(InMemoryCatalog(), InMemoryCarts(), InMemoryLedger())


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(stores, gateway) -> CheckoutService:
    return CheckoutService(stores, gateway, currency="INR")


@pytest.fixture
def reconciler(stores, gateway) -> WebhookReconciler:
    return WebhookReconciler(stores, gateway, restore_stock_on_failure=False)


@pytest.fixture
def address() -> AddressDB:
    return AddressDB(
        name="Asha Rao",
        street="12 MG Road",
        city="Bengaluru",
        state="KA",
        postal_code="560001",
        country="IN",
        phone="+919800000000",
    )


@pytest.fixture
def client(stores, gateway):
    from storefront.orders.main import app

    app.state.stores = stores
    app.state.gateway = gateway
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def make(user_id: str, role: str = "user") -> dict:
        token = create_access_token({"sub": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return make
