from pydantic import BaseModel, Field, field_validator
from typing import Annotated, Optional, List, Literal, Union
from datetime import datetime
from storefront.shared.security_config import sanitize_input
from storefront.orders.models import AddressDB, FulfillmentStatus, PaymentStatus

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int = Field(1, gt=0)
    session_id: Optional[str] = None

class CartItemResponse(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int
    price: int

class CartResponse(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemResponse]
    updated_at: datetime
    subtotal: int

# --- Checkout ---
class AddressIn(BaseModel):
    name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)

    @field_validator('name', 'street', 'city', 'state', 'postal_code', 'country', 'phone')
    def sanitize_fields(cls, v):
        v = sanitize_input(v)
        if not v:
            raise ValueError("must not be blank")
        return v

    def to_db(self) -> AddressDB:
        return AddressDB(**self.model_dump())

class CheckoutRequest(BaseModel):
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    payment_method: Literal["stripe"] = "stripe"

class FulfillmentUpdate(BaseModel):
    fulfillment_status: Optional[FulfillmentStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('tracking_number', 'notes')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

# --- Orders ---
class ProductReference(BaseModel):
    kind: Literal["reference"] = "reference"
    id: str

class ProductSnapshot(BaseModel):
    kind: Literal["snapshot"] = "snapshot"
    id: str
    name: str
    price: int
    is_active: bool = True

ProductRef = Annotated[Union[ProductReference, ProductSnapshot], Field(discriminator="kind")]

class OrderItemResponse(BaseModel):
    product: ProductRef
    name: str # Captured at checkout
    sku: Optional[str] = None
    quantity: int
    price: int # Captured at checkout

class OrderResponse(BaseModel):
    id: str
    user_id: str
    items: List[OrderItemResponse]
    shipping_address: AddressDB
    billing_address: Optional[AddressDB] = None
    subtotal: int
    shipping_cost: int
    tax: int
    total: int
    currency: str
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

class CheckoutResponse(BaseModel):
    order: OrderResponse
    client_secret: str
    publishable_key: str

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination

# --- Webhooks ---
class GatewayEventData(BaseModel):
    object: dict

class GatewayEvent(BaseModel):
    id: Optional[str] = None
    type: str
    data: GatewayEventData

class WebhookAck(BaseModel):
    received: bool = True
