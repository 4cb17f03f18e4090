"""
Simulated payments.

Mobile money attempts wait a fixed delay and then succeed at random; no
provider is contacted. Every attempt is stored as a payment row and its
outcome is mirrored onto the order's ``payment_status``.
"""
import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header
from sqlalchemy.orm import Session

from . import auth, config, crud, models, schemas, webhooks
from .database import get_db
from .exceptions import AuthenticationRequired, NotFound, ValidationFailed
from .references import generate_transaction_id, new_object_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

MOBILE_MONEY_PROVIDERS = {
    "mtn_money": ("MTN_MOBILE_MONEY", "MTN", "MTN Mobile Money"),
    "orange_money": ("ORANGE_MONEY", "OM", "Orange Money"),
}


async def simulate_mobile_money(payment: models.Payment) -> dict:
    """
    Pretend to charge a mobile money wallet.

    Returns:
        Provider response with ``status`` "success" or "failed"
    """
    provider, prefix, label = MOBILE_MONEY_PROVIDERS[payment.payment_method]
    await asyncio.sleep(config.PAYMENT_SIMULATION_DELAY)

    is_success = random.random() < config.PAYMENT_SUCCESS_RATE
    if is_success:
        message = (
            f"Payment of {float(payment.amount):,.0f} FCFA initiated successfully "
            f"via {label} to {payment.phone_number}"
        )
    else:
        message = "Payment failed. Please try again or contact customer support."

    return {
        "success": is_success,
        "status": "success" if is_success else "failed",
        "message": message,
        "provider": provider,
        "externalTransactionId": f"{prefix}-{int(time.time() * 1000)}" if is_success else None,
    }


@router.post("")
async def initiate_payment(
    payload: schemas.PaymentCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Start a payment for one of the caller's orders.

    Raises:
        ValidationFailed: 400 on missing fields, missing phone or already paid
        NotFound: 404 if the order does not exist or belongs to someone else
    """
    if not payload.order_id or not payload.payment_method:
        raise ValidationFailed("Order ID and payment method are required")
    if payload.payment_method in MOBILE_MONEY_PROVIDERS and not payload.phone_number:
        raise ValidationFailed("Phone number is required for mobile money payments")

    user_id = auth.user_reference(current_user)
    order = crud.get_owned_order(db, payload.order_id, user_id)
    if order is None:
        raise NotFound("Order not found")
    if order.payment_status == "paid":
        raise ValidationFailed("Order is already paid")

    payment = crud.create_payment(db, models.Payment(
        id=new_object_id(),
        order_id=order.id,
        user_id=user_id,
        amount=order.total_amount,
        payment_method=payload.payment_method,
        phone_number=payload.phone_number,
        status="pending",
        transaction_id=generate_transaction_id(),
        created_at=datetime.utcnow(),
    ))
    logger.info(f"Payment {payment.transaction_id} created for order {order.id} ({payment.payment_method})")

    if payload.payment_method in MOBILE_MONEY_PROVIDERS:
        response = await simulate_mobile_money(payment)
    elif payload.payment_method == "cash_on_delivery":
        response = {"success": True, "status": "pending", "message": "Cash on delivery order confirmed"}
    else:
        response = {"success": True, "status": "pending", "message": "Payment processing"}

    crud.record_payment_status(
        db,
        payment,
        response["status"],
        response=response,
        external_transaction_id=response.get("externalTransactionId"),
    )
    logger.info(f"Payment {payment.transaction_id} finished with status '{payment.status}'")
    webhooks.notify_payment_updated(background_tasks, order.id, payment.transaction_id, payment.status)

    result = schemas.PaymentResult(
        payment_id=payment.id,
        transaction_id=payment.transaction_id,
        status=payment.status,
        message=response["message"],
    )
    return {"success": True, "data": result.model_dump(by_alias=True)}


@router.put("")
def payment_callback(
    payload: schemas.PaymentCallback,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    x_callback_secret: Optional[str] = Header(default=None)
):
    """
    Record a status reported by the payment provider.

    Open to unauthenticated callers unless ``PAYMENT_CALLBACK_SECRET`` is set,
    in which case the ``X-Callback-Secret`` header must carry it.
    """
    if config.PAYMENT_CALLBACK_SECRET and x_callback_secret != config.PAYMENT_CALLBACK_SECRET:
        logger.warning("Rejected payment callback with missing or wrong secret")
        raise AuthenticationRequired("Invalid callback secret")

    if not payload.transaction_id or not payload.status:
        raise ValidationFailed("Transaction ID and status are required")

    payment = crud.get_payment_by_transaction(db, payload.transaction_id)
    if payment is None:
        raise NotFound("Payment not found")

    crud.record_payment_status(
        db,
        payment,
        payload.status,
        external_transaction_id=payload.external_transaction_id,
    )
    logger.info(f"Payment {payment.transaction_id} updated to '{payload.status}' by callback")
    webhooks.notify_payment_updated(background_tasks, payment.order_id, payment.transaction_id, payload.status)

    return {"success": True, "message": "Payment status updated successfully"}
