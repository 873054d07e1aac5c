"""
MongoDB access for the catalog, carts and the order ledger.

Every write here touches a single document, so each one is atomic on its
own. Stock moves through conditional ``$inc`` updates: the filter only
matches while enough stock remains, which closes the read-then-write race
between concurrent checkouts without any cross-request locking.
"""
from datetime import datetime
from typing import Optional, List, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import DuplicateKeyError

from storefront.shared.utils import ConflictException
from storefront.orders.models import ProductDB, CartDB, CartItemDB, OrderDB


# --- Helper ---
def to_oid(id: str) -> Optional[ObjectId]:
    if isinstance(id, ObjectId):
        return id
    if not id or not ObjectId.is_valid(id):
        return None
    return ObjectId(id)

def _from_doc(doc: dict) -> dict:
    doc["_id"] = str(doc["_id"])
    return doc


class CatalogStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.products

    async def get_product(self, product_id: str) -> Optional[ProductDB]:
        oid = to_oid(product_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if not doc:
            return None
        return ProductDB(**_from_doc(doc))

    async def reserve_stock(self, product_id: str, quantity: int, sku: Optional[str] = None) -> bool:
        """Decrement stock iff at least ``quantity`` is available. Returns whether it happened."""
        oid = to_oid(product_id)
        if oid is None:
            return False
        query = {"_id": oid, "is_active": True}
        if sku:
            query["variants"] = {"$elemMatch": {"sku": sku, "stock": {"$gte": quantity}}}
            field = "variants.$.stock"
        else:
            query["stock"] = {"$gte": quantity}
            field = "stock"
        result = await self.collection.update_one(
            query,
            {"$inc": {field: -quantity}, "$set": {"updated_at": datetime.utcnow()}}
        )
        return result.modified_count == 1

    async def release_stock(self, product_id: str, quantity: int, sku: Optional[str] = None) -> bool:
        oid = to_oid(product_id)
        if oid is None:
            return False
        query = {"_id": oid}
        if sku:
            query["variants.sku"] = sku
            field = "variants.$.stock"
        else:
            field = "stock"
        result = await self.collection.update_one(
            query,
            {"$inc": {field: quantity}, "$set": {"updated_at": datetime.utcnow()}}
        )
        return result.modified_count == 1


class CartStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.carts

    @staticmethod
    def _owner_filter(user_id: Optional[str], session_id: Optional[str]) -> dict:
        if user_id:
            return {"user_id": user_id}
        return {"session_id": session_id}

    async def get(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[CartDB]:
        doc = await self.collection.find_one(self._owner_filter(user_id, session_id))
        if not doc:
            return None
        return CartDB(**_from_doc(doc))

    async def get_or_create(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> CartDB:
        cart = await self.get(user_id, session_id)
        if cart:
            return cart
        cart = CartDB(user_id=user_id, session_id=session_id, items=[])
        doc = cart.model_dump(by_alias=True, exclude={"id"})
        res = await self.collection.insert_one(doc)
        cart.id = str(res.inserted_id)
        return cart

    async def set_items(self, cart_id: str, items: List[CartItemDB]) -> None:
        await self.collection.update_one(
            {"_id": to_oid(cart_id)},
            {"$set": {"items": [i.model_dump() for i in items], "updated_at": datetime.utcnow()}}
        )

    async def clear(self, cart_id: str) -> None:
        await self.set_items(cart_id, [])


class OrderLedger:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.orders

    def new_id(self) -> str:
        return str(ObjectId())

    async def insert(self, order: OrderDB) -> OrderDB:
        doc = order.model_dump(by_alias=True)
        doc["_id"] = to_oid(order.id) if order.id else ObjectId()
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictException("Order already exists")
        order.id = str(doc["_id"])
        return order

    async def get(self, order_id: str) -> Optional[OrderDB]:
        oid = to_oid(order_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return OrderDB(**_from_doc(doc)) if doc else None

    async def find_by_charge_id(self, charge_id: str) -> Optional[OrderDB]:
        doc = await self.collection.find_one({"charge_id": charge_id})
        return OrderDB(**_from_doc(doc)) if doc else None

    async def update(self, order_id: str, changes: dict, expected: Optional[dict] = None) -> Optional[OrderDB]:
        """
        Apply ``changes`` to the order, optionally only while it still matches
        ``expected`` (a Mongo filter fragment). Returns the updated order, or
        None when no document matched.
        """
        oid = to_oid(order_id)
        if oid is None:
            return None
        query = {"_id": oid}
        if expected:
            query.update(expected)
        doc = await self.collection.find_one_and_update(
            query,
            {"$set": {**changes, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return OrderDB(**_from_doc(doc)) if doc else None

    async def delete(self, order_id: str) -> None:
        await self.collection.delete_one({"_id": to_oid(order_id)})

    async def list(self, query: dict, page: int = 1, limit: int = 10) -> Tuple[List[OrderDB], int]:
        skip = (page - 1) * limit
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        orders = []
        async for doc in cursor:
            orders.append(OrderDB(**_from_doc(doc)))
        return orders, total


class Stores:
    def __init__(self, catalog, carts, orders):
        self.catalog = catalog
        self.carts = carts
        self.orders = orders

    @classmethod
    def from_database(cls, db: AsyncIOMotorDatabase) -> "Stores":
        return cls(CatalogStore(db), CartStore(db), OrderLedger(db))


async def ensure_indexes(db: AsyncIOMotorDatabase):
    await db.carts.create_index(
        "user_id", unique=True, partialFilterExpression={"user_id": {"$type": "string"}}
    )
    await db.carts.create_index(
        "session_id", unique=True, partialFilterExpression={"session_id": {"$type": "string"}}
    )
    await db.orders.create_index("user_id")
    await db.orders.create_index("payment_status")
    await db.orders.create_index("fulfillment_status")
    await db.orders.create_index("payment_intent_id", sparse=True)
    await db.orders.create_index("charge_id", sparse=True)
    await db.products.create_index("is_active")
