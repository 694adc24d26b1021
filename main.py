import logging
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, ValidationError
from pymongo.database import Database

import database
from cart_service import CartCache, CartService, calculate_subtotal
from checkout_service import CheckoutService, find_shipping_option, get_shipping_options
from database import get_db, utcnow
from errors import (
    CartItemNotFoundError,
    InvalidShippingMethodError,
    InvalidStatusError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    RefundError,
    SessionNotFoundError,
    StorageError,
    StorefrontError,
    UndoNotAvailableError,
    WebhookVerificationError,
)
from logging_config import setup_logging
from order_service import OrderService
from order_status import OrderStatusWorkflow
from payments import apply_payment_result, process_event, refund_payment, verify_webhook
from schemas import CartItemProduct, OrderFilters, OrderStatus, PaymentInfo, PaymentStatus
from settings import Settings, get_settings
from validation import is_checked, parse_address, validate_address, validate_payment_form

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Checkout API")
app.state.cart_cache = CartCache()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------- Dependencies -------------------------
def get_cart_cache(request: Request) -> CartCache:
    return request.app.state.cart_cache


def get_clock():
    return utcnow


async def read_form(request: Request) -> dict:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


async def read_body(request: Request) -> bytes:
    return await request.body()


def checkout_service(db: Database = Depends(get_db), cache: CartCache = Depends(get_cart_cache)) -> CheckoutService:
    return CheckoutService(db, cache)


def cart_service(db: Database = Depends(get_db), cache: CartCache = Depends(get_cart_cache)) -> CartService:
    return CartService(db, cache)


def order_service(db: Database = Depends(get_db)) -> OrderService:
    return OrderService(db)


def status_workflow(db: Database = Depends(get_db), clock=Depends(get_clock)) -> OrderStatusWorkflow:
    return OrderStatusWorkflow(db, clock=clock)


# ------------------------- Errors -------------------------
ERROR_STATUS_CODES = {
    StorageError: 500,
    SessionNotFoundError: 404,
    OrderNotFoundError: 404,
    CartItemNotFoundError: 404,
    InvalidShippingMethodError: 400,
    InvalidStatusError: 400,
    InvalidStatusTransitionError: 422,
    UndoNotAvailableError: 409,
    WebhookVerificationError: 400,
    RefundError: 400,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"error": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, InvalidStatusTransitionError):
        content.update(
            current_status=exc.current,
            requested_status=exc.requested,
            allowed_transitions=exc.allowed,
        )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/")
def read_root():
    return {"service": "storefront-checkout", "status": "running"}


# ------------------------- Checkout steps (form posts) -------------------------
@app.post("/checkout/information")
def checkout_information(
    request: Request,
    form: dict = Depends(read_form),
    service: CheckoutService = Depends(checkout_service),
):
    errors = validate_address(form)
    if errors:
        logger.info("Address validation failed: %s", sorted(errors))
        return JSONResponse({"errors": errors}, status_code=400)

    cart_id = form.get("cart_id")
    if not cart_id:
        return JSONResponse({"error": "Missing cart ID"}, status_code=400)
    session_id = form.get("session_id")
    user_id = request.headers.get("x-user-id")

    try:
        session = None
        if session_id:
            try:
                session = service.get_checkout_session(session_id)
            except StorageError as e:
                logger.warning("Failed to retrieve checkout session %s, creating a new one: %s", session_id, e)
        if session is None or not session.is_persisted:
            session = service.get_or_create_checkout_session(cart_id, user_id)

        updated = service.update_shipping_address(
            session.id, parse_address(form), guest_email=form.get("email"), cart_id=cart_id
        )
    except StorageError as e:
        logger.error("Error in checkout information step: %s", e)
        return JSONResponse({"error": "An error occurred while processing your information"}, status_code=500)

    return RedirectResponse(f"/checkout/shipping?session={updated.id}", status_code=303)


@app.post("/checkout/shipping")
def checkout_shipping(form: dict = Depends(read_form), service: CheckoutService = Depends(checkout_service)):
    session_id = form.get("session_id")
    option_id = form.get("shipping_method")
    if not session_id or not option_id:
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    option = find_shipping_option(option_id)
    try:
        updated = service.update_shipping_method(session_id, option, cart_id=form.get("cart_id"))
    except StorageError as e:
        # keep the shopper moving, the payment step reloads the session
        logger.error("Error in checkout shipping step, redirecting anyway: %s", e)
        return RedirectResponse(f"/checkout/payment?session={session_id}", status_code=303)

    return RedirectResponse(f"/checkout/payment?session={updated.id}", status_code=303)


@app.post("/checkout/payment")
def checkout_payment(form: dict = Depends(read_form), service: CheckoutService = Depends(checkout_service)):
    errors = validate_payment_form(form)
    if errors:
        return JSONResponse({"errors": errors}, status_code=400)

    session_id = form.get("session_id")
    if not session_id:
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    same_as_shipping = is_checked(form, "same_as_shipping")
    payment_info = PaymentInfo(
        type=form["payment_type"],
        cardholder_name=form.get("cardholder_name"),
        payment_method_id=form.get("payment_method_id"),
        billing_address_same_as_shipping=same_as_shipping,
        billing_address=None if same_as_shipping else parse_address(form, prefix="billing_"),
        provider=form.get("payment_provider") or "mock",
    )
    try:
        updated = service.update_payment_info(session_id, payment_info)
    except StorageError as e:
        logger.error("Error in checkout payment step: %s", e)
        return JSONResponse({"error": "An error occurred while processing payment information"}, status_code=500)

    return RedirectResponse(f"/checkout/review?session={updated.id}", status_code=303)


@app.post("/checkout/review")
def checkout_place_order(form: dict = Depends(read_form), service: CheckoutService = Depends(checkout_service)):
    session_id = form.get("session_id")
    if not session_id:
        return JSONResponse({"error": "Missing session ID"}, status_code=400)

    try:
        order = service.create_order(session_id)
    except StorageError as e:
        logger.error("Error placing order for session %s: %s", session_id, e)
        return JSONResponse({"error": "An error occurred while placing your order"}, status_code=500)

    response = RedirectResponse(f"/checkout/confirmation?order={order.id}", status_code=303)
    response.headers["X-Clear-Cart"] = "true"
    return response


# ------------------------- Checkout API -------------------------
class SessionRequest(BaseModel):
    cart_id: str
    user_id: Optional[str] = None


class CreateOrderRequest(BaseModel):
    session_id: str


@app.get("/api/checkout/shipping-options")
def list_shipping_options():
    return get_shipping_options()


@app.post("/api/checkout/sessions")
def get_or_create_session(payload: SessionRequest, service: CheckoutService = Depends(checkout_service)):
    return service.get_or_create_checkout_session(payload.cart_id, payload.user_id)


@app.get("/api/checkout/sessions/{session_id}")
def get_session(session_id: str, service: CheckoutService = Depends(checkout_service)):
    return service.get_checkout_session(session_id)


@app.post("/api/update-shipping-method")
def update_shipping_method(form: dict = Depends(read_form), service: CheckoutService = Depends(checkout_service)):
    session_id = form.get("session_id")
    option_id = form.get("shipping_method")
    if not session_id or not option_id:
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    option = find_shipping_option(option_id)
    session = service.update_shipping_method(session_id, option, cart_id=form.get("cart_id"))
    return {"success": True, "session": session}


@app.post("/api/checkout/create-order", status_code=201)
def create_order(payload: CreateOrderRequest, service: CheckoutService = Depends(checkout_service)):
    return service.create_order(payload.session_id)


# ------------------------- Cart -------------------------
class AddCartItemRequest(BaseModel):
    cart_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    user_id: Optional[str] = None
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    product: Optional[CartItemProduct] = None


class UpdateCartItemRequest(BaseModel):
    quantity: int


class EmergencyClearRequest(BaseModel):
    anonymous_id: Optional[str] = None
    item_id: Optional[str] = None


@app.get("/api/cart/{cart_id}")
def get_cart(cart_id: str, service: CartService = Depends(cart_service)):
    items = service.get_items(cart_id)
    return {"cart_id": cart_id, "items": items, "subtotal": calculate_subtotal(items)}


@app.post("/api/cart/items", status_code=201)
def add_to_cart(payload: AddCartItemRequest, service: CartService = Depends(cart_service)):
    cart_id = payload.cart_id
    if not cart_id:
        cart_id = service.get_or_create_cart(payload.anonymous_id, payload.user_id).id
    item = service.add_item(
        cart_id,
        payload.product_id,
        payload.quantity,
        payload.price,
        variant_id=payload.variant_id,
        product=payload.product,
    )
    return {"cart_id": cart_id, "item": item}


@app.patch("/api/cart/items/{item_id}")
def update_cart_item(item_id: str, payload: UpdateCartItemRequest, service: CartService = Depends(cart_service)):
    return {"item": service.update_quantity(item_id, payload.quantity)}


@app.delete("/api/cart/items/{item_id}")
def remove_cart_item(item_id: str, service: CartService = Depends(cart_service)):
    service.remove_item(item_id)
    return {"success": True}


@app.post("/api/cart/emergency-clear")
def emergency_cart_clear(
    request: Request,
    payload: EmergencyClearRequest,
    service: CartService = Depends(cart_service),
):
    anonymous_id = payload.anonymous_id or request.cookies.get("anonymous_cart_id")
    if not anonymous_id:
        return JSONResponse({"success": False, "error": "Missing anonymous cart ID"}, status_code=400)
    return service.emergency_clear(anonymous_id, payload.item_id)


# ------------------------- Orders -------------------------
class StatusUpdateRequest(BaseModel):
    status: str
    notes: Optional[str] = None
    actor: Optional[str] = None


class UndoRequest(BaseModel):
    actor: Optional[str] = None


class PaymentStatusUpdateRequest(BaseModel):
    payment_status: str
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None


@app.get("/api/orders")
def list_orders(
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    status: Optional[List[OrderStatus]] = Query(None),
    payment_status: Optional[List[PaymentStatus]] = Query(None),
    search: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: Literal["created_at", "updated_at", "total", "order_number"] = "created_at",
    sort_direction: Literal["asc", "desc"] = "desc",
    service: OrderService = Depends(order_service),
):
    filters = OrderFilters(
        user_id=user_id,
        email=email,
        status=status,
        payment_status=payment_status,
        search=search,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )
    return service.get_orders(filters)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, service: OrderService = Depends(order_service)):
    return service.get_order_by_id(order_id)


@app.get("/api/orders/{order_id}/status")
def get_order_status(order_id: str, workflow: OrderStatusWorkflow = Depends(status_workflow)):
    return workflow.get_status_overview(order_id)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    workflow: OrderStatusWorkflow = Depends(status_workflow),
):
    return workflow.update_status(order_id, payload.status, actor=payload.actor, notes=payload.notes)


@app.post("/api/orders/{order_id}/status/undo")
def undo_order_status(
    order_id: str,
    payload: Optional[UndoRequest] = None,
    workflow: OrderStatusWorkflow = Depends(status_workflow),
):
    order = workflow.undo_last_change(order_id, actor=payload.actor if payload else None)
    return {"order": order, "undo": workflow.get_undo_status(order_id)}


@app.post("/api/orders/{order_id}/payment-status")
def update_payment_status(
    order_id: str,
    payload: PaymentStatusUpdateRequest,
    service: OrderService = Depends(order_service),
):
    order = service.update_payment_status(
        order_id, payload.payment_status, payload.payment_intent_id, payload.notes
    )
    return {
        "success": True,
        "message": f"Order payment status updated to {payload.payment_status}",
        "order": order,
    }


# ------------------------- Payments -------------------------
@app.post("/api/payment/webhook")
def payment_webhook(
    request: Request,
    provider: str = "stripe",
    body: bytes = Depends(read_body),
    service: OrderService = Depends(order_service),
    config: Settings = Depends(get_settings),
):
    if provider != "stripe":
        return JSONResponse({"error": "Unsupported payment provider"}, status_code=400)

    try:
        event = verify_webhook(body, request.headers.get("stripe-signature", ""), config.stripe_webhook_secret)
        result = process_event(event)
        if result is not None:
            apply_payment_result(service, result)
    except StorefrontError as e:
        logger.error("Webhook error: %s", e)
        return JSONResponse({"error": "Webhook processing failed"}, status_code=400)

    return {"received": True}


class RefundRequest(BaseModel):
    payment_id: str
    amount: Optional[float] = Field(None, gt=0)
    provider: Optional[str] = None
    reason: Optional[str] = None


@app.post("/api/payment/refund")
def refund(body: bytes = Depends(read_body), service: OrderService = Depends(order_service)):
    try:
        payload = RefundRequest.model_validate_json(body)
    except ValidationError as e:
        errors = {".".join(str(p) for p in err["loc"]) or "body": err["msg"] for err in e.errors()}
        return JSONResponse(
            {"success": False, "error": "Invalid request data", "validation_errors": errors}, status_code=400
        )

    try:
        result = refund_payment(service, payload.payment_id, payload.amount, payload.provider, payload.reason)
    except StorefrontError as e:
        logger.error("Refund for payment %s failed: %s", payload.payment_id, e)
        return JSONResponse({"success": False, "error": str(e)}, status_code=ERROR_STATUS_CODES.get(type(e), 500))

    return {
        "success": True,
        "refund_id": result.refund_id,
        "refund_amount": result.refund_amount,
        "error": None,
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if settings.database_name else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }

    if database.db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response

    response["database"] = "✅ Available"
    response["connection_status"] = "Connected"
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
