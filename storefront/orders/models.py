from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, model_validator


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class AddressDB(BaseModel):
    name: str
    street: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str


class VariantDB(BaseModel):
    sku: str
    attributes: dict = {}
    price: Optional[int] = None # Falls back to the product price when unset
    stock: int = 0


class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: Optional[str] = None
    price: int # Minor currency units
    currency: str = "INR"
    stock: int = 0
    variants: List[VariantDB] = []
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)

    def find_variant(self, sku: str) -> Optional[VariantDB]:
        for variant in self.variants:
            if variant.sku == sku:
                return variant
        return None


class CartItemDB(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: int # Snapshot taken when the item was added


class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemDB] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def check_owner(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("Cart must have exactly one of user_id or session_id")
        return self


class OrderItemDB(BaseModel):
    product_id: str
    name: str
    sku: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: int = Field(..., ge=0)


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[OrderItemDB]
    shipping_address: AddressDB
    billing_address: Optional[AddressDB] = None
    subtotal: int = Field(..., ge=0)
    shipping_cost: int = Field(0, ge=0)
    tax: int = Field(0, ge=0)
    total: int = Field(..., ge=0)
    currency: str = "INR"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PROCESSING
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    @model_validator(mode="after")
    def check_total(self):
        if self.total != self.subtotal + self.shipping_cost + self.tax:
            raise ValueError("total must equal subtotal + shipping_cost + tax")
        return self
