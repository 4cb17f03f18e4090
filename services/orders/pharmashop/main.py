"""
PharmaShop Orders Service API

This module implements the FastAPI application for the pharmacy order
workflow: order submission with prescription upload, order listing and
detail for customers and admins, status updates, cancellation, the order
timeline, carts, prescription checks and simulated payments.

Every error is returned as ``{"success": false, "error": ...}``.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Submit an order (JSON or multipart with a prescription file)
    GET /orders: List the caller's orders (all orders for admins)
    GET /orders/{order_id}: Get a single order with its prescription
    GET /orders/{order_id}/timeline: Get the order's event history
    PUT /orders/{order_id}/cancel: Cancel a pending or confirmed order
    PUT /orders: Update an order's status (admin)
    GET /admin/orders: Search and filter all orders (admin)
    GET /admin/orders/{order_id}: Get any order (admin)
    PUT /admin/orders/{order_id}/status: Back-office status change (admin)

Attributes:
    app (FastAPI): The FastAPI application instance titled "pharmashop-orders"
"""
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, cart, checkout, config, crud, enrichment, followups, models, payments, prescriptions, schemas
from . import validators, webhooks
from .database import engine, get_db
from .exceptions import (
    AuthorizationDenied, NotFound, PharmaShopError, UpstreamFailure, ValidationFailed,
    describe_validation_errors,
)
from .references import normalize_user_reference

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="pharmashop-orders")

app.include_router(cart.router)
app.include_router(prescriptions.router)
app.include_router(payments.router)


@app.exception_handler(PharmaShopError)
async def pharmashop_error_handler(request: Request, exc: PharmaShopError) -> JSONResponse:
    """Render domain errors in the service's error envelope."""
    content = {"success": False, "error": exc.message}
    if isinstance(exc, UpstreamFailure) and exc.detail and config.ENVIRONMENT != "production":
        content["details"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": describe_validation_errors(exc.errors())},
    )


def serialize_order(order: models.Order) -> dict:
    return schemas.Order.model_validate(order).model_dump(by_alias=True, mode="json")


def get_order_or_404(db: Session, order_id: str) -> models.Order:
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


def ensure_can_view(order: models.Order, current_user: auth.CurrentUser) -> None:
    """
    Allow the order's owner and admins.

    Raises:
        AuthorizationDenied: 403 for anyone else
    """
    if auth.is_admin(current_user):
        return
    if normalize_user_reference(order.user_id) != auth.user_reference(current_user):
        raise AuthorizationDenied("Not authorized to access this order")


def order_page(db: Session, orders, total: int, page: int, limit: int) -> dict:
    pagination = schemas.Pagination(page=page, limit=limit, total=total, pages=crud.page_count(total, limit))
    return {
        "success": True,
        "data": {
            "orders": enrichment.enrich_orders(db, orders) if orders else [],
            "pagination": pagination.model_dump(),
        },
    }


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_order(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
    idempotency_key: Optional[str] = Header(default=None)
):
    """
    Submit an order from the caller's cart.

    Accepts a JSON body or a multipart form carrying a ``prescriptionFile``.
    Stock is reserved and the order stored atomically; the cart is cleared
    and webhooks are sent after the response.

    Returns:
        dict: {success, data: order, message}; 201 when created, 200 when an
        ``Idempotency-Key`` replay returns the existing order
    """
    payload, upload = await checkout.parse_order_request(request)
    order, created = await checkout.submit_order(db, current_user, payload, upload, idempotency_key)

    if not created:
        response.status_code = status.HTTP_200_OK
        return {"success": True, "data": serialize_order(order), "message": "Order already submitted"}

    background_tasks.add_task(followups.clear_cart_followup, order.user_id)
    webhooks.notify_order_created(background_tasks, {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "userId": order.user_id,
        "totalAmount": float(order.total_amount),
        "status": order.status,
    })
    return {"success": True, "data": serialize_order(order), "message": "Order created successfully"}


@app.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination, newest first.

    Customers see their own orders; admins see every order and may filter by
    ``status`` ("all" disables the filter).
    """
    if auth.is_admin(current_user):
        orders, total = crud.list_orders(db, status=status, page=page, limit=limit)
    else:
        user_id = auth.user_reference(current_user)
        orders, total = crud.list_orders(db, user_id=user_id, page=page, limit=limit)
    return order_page(db, orders, total, page, limit)


@app.put("/orders")
def update_order_status(
    payload: schemas.OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Move an order to a new status (admin only).

    Args:
        payload: {orderId, status, paymentStatus?, notes?}

    Raises:
        ValidationFailed: 400 on missing fields, unknown statuses or a disallowed transition
        NotFound: 404 if the order does not exist
    """
    if not payload.order_id or not payload.status:
        raise ValidationFailed("Order ID and status are required")

    is_valid, error_message = validators.validate_order_status(payload.status)
    if not is_valid:
        raise ValidationFailed(error_message)

    if payload.payment_status is not None:
        is_valid, error_message = validators.validate_payment_status(payload.payment_status)
        if not is_valid:
            raise ValidationFailed(error_message)

    order = get_order_or_404(db, payload.order_id)
    old_status = order.status

    is_valid, error_message = validators.validate_order_status_transition(old_status, payload.status)
    if not is_valid:
        raise ValidationFailed(error_message)

    crud.update_order_status(
        db,
        order,
        payload.status,
        payment_status=payload.payment_status,
        admin_notes=payload.notes,
        changed_by=current_user.id,
    )
    logger.info(f"Order {order.id} status updated from '{old_status}' to '{payload.status}' by {current_user.email}")

    if old_status != payload.status:
        if payload.status == "cancelled":
            webhooks.notify_order_cancelled(background_tasks, order.id)
        else:
            webhooks.notify_order_status_changed(background_tasks, order.id, old_status, payload.status)

    return {"success": True, "message": "Order updated successfully"}


@app.get("/orders/{order_id}")
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order with user info and formatted prescription.

    Raises:
        NotFound: 404 if order not found
        AuthorizationDenied: 403 if the caller neither owns the order nor is an admin
    """
    order = get_order_or_404(db, order_id)
    ensure_can_view(order, current_user)
    return {"success": True, "data": enrichment.order_detail(db, order)}


@app.get("/orders/{order_id}/timeline")
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order, oldest first.

    Raises:
        NotFound: 404 if order not found
        AuthorizationDenied: 403 if not authorized to view this order
    """
    order = get_order_or_404(db, order_id)
    ensure_can_view(order, current_user)
    events = crud.get_order_events(db, order_id)
    return {
        "success": True,
        "data": [schemas.OrderEvent.model_validate(event).model_dump(by_alias=True, mode="json") for event in events],
    }


@app.put("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order that has not been processed yet; its stock is given back.

    Raises:
        ValidationFailed: 400 if the order is past the cancellable statuses
    """
    order = get_order_or_404(db, order_id)
    ensure_can_view(order, current_user)

    if order.status not in validators.CUSTOMER_CANCELLABLE_STATUSES:
        raise ValidationFailed(f"Order cannot be cancelled once {order.status}")

    crud.update_order_status(db, order, "cancelled", changed_by=current_user.id)
    logger.info(f"Order {order.id} cancelled by {current_user.email}")
    webhooks.notify_order_cancelled(background_tasks, order.id)

    return {"success": True, "data": serialize_order(order), "message": "Order cancelled successfully"}


@app.get("/admin/orders")
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """List every order; ``search`` matches the shipping full name, case-insensitively."""
    orders, total = crud.list_orders(db, status=status, search=search, page=page, limit=limit)
    return order_page(db, orders, total, page, limit)


@app.get("/admin/orders/{order_id}")
def admin_get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    order = get_order_or_404(db, order_id)
    return {"success": True, "data": enrichment.order_detail(db, order)}


@app.put("/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    payload: schemas.AdminStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Back-office status change.

    Only confirmed, shipped, delivered and cancelled may be chosen, and
    delivered or cancelled orders are frozen.
    """
    if payload.status not in validators.ADMIN_SETTABLE_STATUSES:
        raise ValidationFailed("Invalid status")

    order = get_order_or_404(db, order_id)
    old_status = order.status
    if old_status in validators.TERMINAL_STATUSES:
        raise ValidationFailed("Cannot update order in final state")

    is_valid, error_message = validators.validate_order_status_transition(old_status, payload.status)
    if not is_valid:
        raise ValidationFailed(error_message)

    crud.update_order_status(db, order, payload.status, changed_by=current_user.id)
    logger.info(f"Order {order.id} moved from '{old_status}' to '{payload.status}' by {current_user.email}")

    if old_status != payload.status:
        if payload.status == "cancelled":
            webhooks.notify_order_cancelled(background_tasks, order.id)
        else:
            webhooks.notify_order_status_changed(background_tasks, order.id, old_status, payload.status)

    return {"success": True, "data": enrichment.order_detail(db, order)}
