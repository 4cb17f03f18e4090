"""
CRUD (Create, Read, Update, Delete) operations for the orders service.

This module contains all database operations for orders, products, users,
carts and order timelines. User references are normalized here, at the
data-access boundary, so handlers never deal with legacy id shapes.
"""
import logging
import math
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .exceptions import InsufficientStock, PharmaShopError, UpstreamFailure
from .references import is_valid_reference, normalize_user_reference, user_reference_variants

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id) -> Optional[models.User]:
    """
    Retrieve a single user by reference.

    Args:
        db: Database session
        user_id: User reference in any stored shape

    Returns:
        User object or None if not found
    """
    reference = normalize_user_reference(user_id)
    if reference is None:
        return None
    return db.query(models.User).filter(models.User.id == reference).first()


def get_users_by_ids(db: Session, user_ids: Iterable[str]) -> List[models.User]:
    references = {ref for ref in (normalize_user_reference(u) for u in user_ids) if ref}
    if not references:
        return []
    return db.query(models.User).filter(models.User.id.in_(references)).all()


def get_active_products(db: Session, product_ids: Sequence[str]) -> List[models.Product]:
    """
    Retrieve the active products among ``product_ids``.

    Malformed ids are ignored, so the caller can compare counts to detect
    unknown or inactive products.
    """
    valid_ids = [pid for pid in product_ids if is_valid_reference(pid)]
    if not valid_ids:
        return []
    return (
        db.query(models.Product)
        .filter(models.Product.id.in_(valid_ids), models.Product.is_active.is_(True))
        .all()
    )


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_idempotency_key(db: Session, user_id: str, key: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.user_id == user_id, models.Order.idempotency_key == key)
        .first()
    )


def list_orders(
    db: Session,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[models.Order], int]:
    """
    Retrieve a page of orders, newest first, with the total matching count.

    Args:
        db: Database session
        user_id: Restrict to this owner (canonical reference); None for all owners
        status: Restrict to this status; None or "all" for every status
        search: Case-insensitive match on the shipping full name
        page: 1-based page number
        limit: Page size

    Returns:
        Tuple of (orders, total)
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id.in_(user_reference_variants(user_id)))
    if status and status != "all":
        query = query.filter(models.Order.status == status)

    if search:
        # Shipping address is a JSON document; filter its full name in Python
        needle = search.lower()
        matching = [
            order for order in query.order_by(models.Order.created_at.desc()).all()
            if needle in str((order.shipping_address or {}).get("fullName", "")).lower()
        ]
        skip = (page - 1) * limit
        return matching[skip:skip + limit], len(matching)

    total = query.count()
    if total == 0:
        return [], 0

    orders = (
        query.order_by(models.Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit > 0 else 0


def reserve_stock(db: Session, lines: Sequence[Tuple[models.Product, int]]) -> None:
    """
    Decrement stock for each (product, quantity) pair inside the current transaction.

    Each decrement is conditional on enough stock being left at write time,
    so concurrent orders cannot drive stock negative. Nothing is committed.

    Raises:
        InsufficientStock: if a product no longer has enough units
    """
    now = datetime.utcnow()
    for product, quantity in lines:
        result = db.execute(
            update(models.Product)
            .where(models.Product.id == product.id, models.Product.stock >= quantity)
            .values(stock=models.Product.stock - quantity, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.refresh(product)
            raise InsufficientStock(product.name, product.stock, quantity)
        logger.info(f"Reserved {quantity} units of product '{product.id}'")


def restore_stock(db: Session, items: Iterable[dict]) -> None:
    """Give back the quantities of stored order lines. Nothing is committed."""
    now = datetime.utcnow()
    for item in items:
        db.execute(
            update(models.Product)
            .where(models.Product.id == item["productId"])
            .values(stock=models.Product.stock + int(item["quantity"]), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Restored {item['quantity']} units of product '{item['productId']}'")


def add_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[str] = None,
) -> models.OrderEvent:
    """
    Add an event to an order's timeline in the current transaction.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "cancelled")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    )
    db.add(event)
    return event


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def create_order(
    db: Session,
    order: models.Order,
    lines: Sequence[Tuple[models.Product, int]],
    created_by: str,
) -> models.Order:
    """
    Reserve stock and insert the order as one transaction.

    Either every stock decrement and the order row are committed, or none of
    them are. If another request already stored an order under the same
    idempotency key, nothing is written and that stored order is returned.

    Raises:
        InsufficientStock: if stock ran out since validation
        UpstreamFailure: on database errors
    """
    user_id, key = order.user_id, order.idempotency_key
    try:
        reserve_stock(db, lines)
        db.add(order)
        db.flush()
        add_order_event(
            db,
            order_id=order.id,
            event_type="created",
            description=f"Order {order.order_number} created with status '{order.status}'",
            new_value=order.status,
            user_id=created_by,
        )
        db.commit()
    except PharmaShopError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        if key:
            existing = get_order_by_idempotency_key(db, user_id, key)
            if existing is not None:
                logger.info(f"Idempotency key {key} already used by {existing.order_number}")
                return existing
        logger.error(f"Failed to create order {order.order_number}: {e}")
        raise UpstreamFailure("Failed to create order", detail=str(e))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create order {order.order_number}: {e}")
        raise UpstreamFailure("Failed to create order", detail=str(e))

    db.refresh(order)
    return order


def update_order_status(
    db: Session,
    order: models.Order,
    status: str,
    payment_status: Optional[str] = None,
    admin_notes: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> models.Order:
    """
    Apply a status change (already validated) and record it on the timeline.

    Cancelling an order gives its stock back.
    """
    old_status = order.status
    try:
        if status == "cancelled" and old_status != "cancelled":
            restore_stock(db, order.items or [])

        order.status = status
        if payment_status:
            order.payment_status = payment_status
        if admin_notes:
            order.admin_notes = admin_notes
        order.updated_at = datetime.utcnow()

        if old_status != status:
            add_order_event(
                db,
                order_id=order.id,
                event_type="cancelled" if status == "cancelled" else "status_changed",
                description=f"Status changed from '{old_status}' to '{status}'",
                old_value=old_status,
                new_value=status,
                user_id=changed_by,
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update order {order.id}: {e}")
        raise UpstreamFailure("Failed to update order", detail=str(e))

    db.refresh(order)
    return order


def get_cart(db: Session, user_id: str) -> Optional[models.Cart]:
    return db.query(models.Cart).filter(models.Cart.user_id == user_id).first()


def save_cart_items(db: Session, user_id: str, items: List[dict]) -> models.Cart:
    """Replace a user's cart lines, creating the cart if needed."""
    cart = get_cart(db, user_id)
    if cart is None:
        cart = models.Cart(user_id=user_id, items=items)
        db.add(cart)
    else:
        cart.items = items
        cart.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(cart)
    return cart


def clear_cart(db: Session, user_id: str) -> models.Cart:
    return save_cart_items(db, user_id, [])


PAYMENT_TO_ORDER_STATUS = {"success": "paid", "failed": "failed"}


def order_payment_status(payment_status: str) -> str:
    """Map a payment attempt status onto the order's ``payment_status``."""
    return PAYMENT_TO_ORDER_STATUS.get(payment_status, "pending")


def get_owned_order(db: Session, order_id: str, user_id: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.user_id.in_(user_reference_variants(user_id)))
        .first()
    )


def create_payment(db: Session, payment: models.Payment) -> models.Payment:
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def get_payment_by_transaction(db: Session, transaction_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.transaction_id == transaction_id).first()


def record_payment_status(
    db: Session,
    payment: models.Payment,
    status: str,
    response: Optional[dict] = None,
    external_transaction_id: Optional[str] = None,
) -> Optional[models.Order]:
    """
    Store a payment outcome and mirror it onto the order's payment status.

    Returns:
        The updated order, or None if the payment's order no longer exists
    """
    now = datetime.utcnow()
    payment.status = status
    payment.updated_at = now
    if response is not None:
        payment.response = response
    if external_transaction_id:
        payment.external_transaction_id = external_transaction_id

    order = get_order(db, payment.order_id)
    if order is not None:
        new_status = order_payment_status(status)
        if order.payment_status != new_status:
            add_order_event(
                db,
                order_id=order.id,
                event_type="payment_updated",
                description=f"Payment status changed from '{order.payment_status}' to '{new_status}'",
                old_value=order.payment_status,
                new_value=new_status,
                user_id=payment.user_id,
            )
        order.payment_status = new_status
        order.updated_at = now
    db.commit()
    db.refresh(payment)
    return order
