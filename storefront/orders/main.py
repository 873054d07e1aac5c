from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional, Literal
import math

from storefront.shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse,
    BadRequestException, NotFoundException, ForbiddenException,
    require_auth, require_admin, verify_token, setup_error_handlers
)
from storefront.shared.logging_config import setup_logging, RequestLoggingMiddleware
from storefront.shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from storefront.orders.schemas import (
    CartItemAdd, CartItemResponse, CartResponse,
    CheckoutRequest, CheckoutResponse, FulfillmentUpdate,
    OrderResponse, OrderItemResponse, OrderListResponse, Pagination,
    ProductReference, ProductSnapshot, WebhookAck
)
from storefront.orders.models import CartDB, CartItemDB, OrderDB, PaymentStatus, FulfillmentStatus
from storefront.orders.stores import Stores, ensure_indexes
from storefront.orders.gateway import StripeGateway
from storefront.orders.checkout import CheckoutService
from storefront.orders.webhooks import WebhookReconciler

SERVICE_NAME = "storefront-orders"

# Setup Logging
logger = setup_logging(SERVICE_NAME)

app = FastAPI(title="Storefront Orders Service")

# Security Setup
setup_rate_limiting(app)
setup_error_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    await ensure_indexes(app.mongodb)
    app.state.stores = Stores.from_database(app.mongodb)
    app.state.gateway = StripeGateway()

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
async def get_current_user(request: Request, user: dict = Depends(require_auth)) -> dict:
    request.state.user_id = user["sub"]
    return user

async def get_optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[dict]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        user = verify_token(token)
    except HTTPException:
        return None
    request.state.user_id = user["sub"]
    return user

def get_stores(request: Request) -> Stores:
    return request.app.state.stores

def get_checkout_service(request: Request) -> CheckoutService:
    return CheckoutService(request.app.state.stores, request.app.state.gateway)

def get_reconciler(request: Request) -> WebhookReconciler:
    return WebhookReconciler(request.app.state.stores, request.app.state.gateway)

# --- Helpers ---
def cart_response(cart: CartDB) -> CartResponse:
    items = [CartItemResponse(**item.model_dump()) for item in cart.items]
    return CartResponse(
        user_id=cart.user_id,
        session_id=cart.session_id,
        items=items,
        updated_at=cart.updated_at,
        subtotal=sum(item.price * item.quantity for item in cart.items)
    )

def order_response(order: OrderDB, products: Optional[dict] = None) -> OrderResponse:
    products = products or {}
    items = []
    for item in order.items:
        product = products.get(item.product_id)
        if product:
            ref = ProductSnapshot(
                id=product.id, name=product.name, price=product.price, is_active=product.is_active
            )
        else:
            ref = ProductReference(id=item.product_id)
        items.append(OrderItemResponse(
            product=ref, name=item.name, sku=item.sku, quantity=item.quantity, price=item.price
        ))
    return OrderResponse(**order.model_dump(exclude={"items"}), items=items)

def paginate(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(
    session_id: Optional[str] = None,
    user: Optional[dict] = Depends(get_optional_user),
    stores: Stores = Depends(get_stores)
):
    user_id = user["sub"] if user else None
    if not user_id and not session_id:
        raise BadRequestException("Either authentication or session_id is required")
    cart = await stores.carts.get_or_create(user_id=user_id, session_id=None if user_id else session_id)
    return SuccessResponse(data=cart_response(cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    user: Optional[dict] = Depends(get_optional_user),
    stores: Stores = Depends(get_stores)
):
    user_id = user["sub"] if user else None
    if not user_id and not item.session_id:
        raise BadRequestException("Either authentication or session_id is required")

    # 1. Validate against the live product
    product = await stores.catalog.get_product(item.product_id)
    if not product or not product.is_active:
        raise NotFoundException("Product not found")

    price = product.price
    available = product.stock
    if item.variant_sku:
        variant = product.find_variant(item.variant_sku)
        if not variant:
            raise BadRequestException("Variant not found")
        available = variant.stock
        if variant.price is not None:
            price = variant.price

    # 2. Merge into the cart, refreshing the price snapshot
    cart = await stores.carts.get_or_create(
        user_id=user_id, session_id=None if user_id else item.session_id
    )
    items = list(cart.items)
    for i, cart_item in enumerate(items):
        if cart_item.product_id == item.product_id and cart_item.variant_sku == item.variant_sku:
            quantity = cart_item.quantity + item.quantity
            if quantity > available:
                raise BadRequestException("Insufficient stock")
            items[i] = CartItemDB(
                product_id=item.product_id, variant_sku=item.variant_sku, quantity=quantity, price=price
            )
            break
    else:
        if item.quantity > available:
            raise BadRequestException("Insufficient stock")
        items.append(CartItemDB(
            product_id=item.product_id, variant_sku=item.variant_sku, quantity=item.quantity, price=price
        ))

    # 3. Save
    await stores.carts.set_items(cart.id, items)
    cart.items = items
    cart.updated_at = datetime.utcnow()
    return SuccessResponse(data=cart_response(cart), message="Item added to cart")

# Orders
@app.post(
    "/orders/checkout",
    response_model=SuccessResponse[CheckoutResponse],
    status_code=status.HTTP_201_CREATED
)
@limiter.limit(settings.CHECKOUT_RATE_LIMIT)
async def checkout(
    request: Request,
    body: CheckoutRequest,
    user: dict = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service)
):
    result = await service.checkout(
        user_id=user["sub"],
        shipping_address=body.shipping_address.to_db(),
        billing_address=body.billing_address.to_db() if body.billing_address else None,
        payment_method=body.payment_method,
    )
    return SuccessResponse(
        data=CheckoutResponse(
            order=order_response(result.order),
            client_secret=result.client_secret,
            publishable_key=result.publishable_key
        ),
        message="Order created successfully"
    )

@app.get("/orders", response_model=SuccessResponse[OrderListResponse])
async def list_orders(
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[PaymentStatus] = None
):
    query = {"user_id": user["sub"]}
    if status:
        query["payment_status"] = status.value
    orders, total = await stores.orders.list(query, page, limit)
    return SuccessResponse(data=OrderListResponse(
        orders=[order_response(o) for o in orders],
        pagination=paginate(page, limit, total)
    ))

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    expand: Optional[Literal["product"]] = None,
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    order = await stores.orders.get(order_id)
    if not order:
        raise NotFoundException("Order not found")
    if order.user_id != user["sub"] and user.get("role") != "admin":
        raise ForbiddenException("Access denied")

    products = {}
    if expand == "product":
        for item in order.items:
            if item.product_id not in products:
                product = await stores.catalog.get_product(item.product_id)
                if product:
                    products[item.product_id] = product
    return SuccessResponse(data=order_response(order, products))

@app.post("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service)
):
    order = await service.cancel(order_id, user["sub"])
    return SuccessResponse(data=order_response(order), message="Order cancelled successfully")

# Webhooks
@app.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    # Exact bytes; the signature covers the raw body
    payload = await request.body()
    await reconciler.handle(payload, stripe_signature)
    return WebhookAck(received=True)

# Admin
@app.get("/admin/orders", response_model=SuccessResponse[OrderListResponse])
async def admin_list_orders(
    admin: dict = Depends(require_admin),
    stores: Stores = Depends(get_stores),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = None,
    fulfillment_status: Optional[FulfillmentStatus] = None
):
    query = {}
    if payment_status:
        query["payment_status"] = payment_status.value
    if fulfillment_status:
        query["fulfillment_status"] = fulfillment_status.value
    orders, total = await stores.orders.list(query, page, limit)
    return SuccessResponse(data=OrderListResponse(
        orders=[order_response(o) for o in orders],
        pagination=paginate(page, limit, total)
    ))

@app.put("/admin/orders/{order_id}/fulfillment", response_model=SuccessResponse[OrderResponse])
async def update_order_fulfillment(
    order_id: str,
    update: FulfillmentUpdate,
    admin: dict = Depends(require_admin),
    stores: Stores = Depends(get_stores)
):
    changes = {k: v for k, v in update.model_dump().items() if v is not None}
    if not changes:
        raise BadRequestException("Nothing to update")
    if "fulfillment_status" in changes:
        changes["fulfillment_status"] = FulfillmentStatus(changes["fulfillment_status"]).value

    order = await stores.orders.update(order_id, changes)
    if not order:
        raise NotFoundException("Order not found")
    logger.info("Order fulfillment updated", extra={"order_id": order_id, "user_id": admin["sub"]})
    return SuccessResponse(data=order_response(order), message="Order updated successfully")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "disconnected"
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"payment-gateway": "configured" if settings.STRIPE_SECRET_KEY else "unconfigured"}
    )
