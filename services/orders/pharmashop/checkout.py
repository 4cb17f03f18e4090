"""
Order submission.

Turns a cart (JSON body or multipart form with an optional prescription
file) into a stored order. Checks run in a fixed order and the first failure
is returned to the client. Stock is reserved and the order inserted in one
transaction; a prescription upload that ends up orphaned by a failed insert
is deleted again.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from fastapi import Request
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from . import auth, config, crud, models, schemas, validators
from .clients import storage_client
from .exceptions import (
    AuthorizationDenied, InsufficientStock, NotFound, PharmaShopError, ValidationFailed,
    describe_validation_errors,
)
from .prescriptions import ALLOWED_IMAGE_TYPES, PrescriptionValidator
from .references import generate_order_number, new_object_id

logger = logging.getLogger(__name__)

ALLOWED_PRESCRIPTION_TYPES = ALLOWED_IMAGE_TYPES + ("image/webp", "application/pdf")
JSON_FORM_FIELDS = ("items", "shippingAddress", "prescriptionData")


@dataclass
class PrescriptionUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def _decode_form_json(form, field: str):
    raw = form.get(field)
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be valid JSON")


async def parse_order_request(request: Request) -> Tuple[schemas.OrderCreate, Optional[PrescriptionUpload]]:
    """
    Read an order submission from a JSON body or a multipart form.

    Multipart forms carry ``items``, ``shippingAddress`` and ``prescriptionData``
    as JSON strings, the other fields as plain values and the file as
    ``prescriptionFile``.

    Raises:
        ValidationFailed: on malformed bodies
    """
    content_type = request.headers.get("content-type", "")
    upload = None

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        raw = {field: _decode_form_json(form, field) for field in JSON_FORM_FIELDS}
        raw["items"] = raw["items"] or []
        raw["totalAmount"] = form.get("totalAmount") or None
        raw["paymentMethod"] = form.get("paymentMethod") or "cash_on_delivery"
        raw["notes"] = form.get("notes") or ""

        clinic_name = form.get("clinicName") or form.get("prescriptionData.clinicName")
        if clinic_name and not raw["prescriptionData"]:
            raw["prescriptionData"] = {"clinicName": clinic_name}

        file = form.get("prescriptionFile")
        if isinstance(file, UploadFile):
            data = await file.read()
            if data:
                upload = PrescriptionUpload(
                    filename=file.filename or "prescription",
                    content_type=(file.content_type or "application/octet-stream").lower(),
                    data=data,
                )
    else:
        try:
            raw = await request.json()
        except ValueError:
            raise ValidationFailed("Invalid JSON body")
        if not isinstance(raw, dict):
            raise ValidationFailed("Invalid request body")

    try:
        payload = schemas.OrderCreate.model_validate(raw)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_errors(e.errors()))

    return payload, upload


def check_prescription_file(upload: PrescriptionUpload) -> None:
    if upload.content_type not in ALLOWED_PRESCRIPTION_TYPES:
        raise ValidationFailed("Invalid prescription file type. Only images and PDF are allowed.")
    if upload.size > config.MAX_PRESCRIPTION_SIZE:
        raise ValidationFailed("Prescription file too large. Maximum 5MB allowed.")


def _ensure(result: Tuple[bool, str]) -> None:
    is_valid, message = result
    if not is_valid:
        raise ValidationFailed(message)


async def _advisory_validation(upload: PrescriptionUpload) -> Optional[dict]:
    """Server-side keyword check of an image prescription, stored for reviewers only."""
    if not config.PRESCRIPTION_OCR_ENABLED or upload.content_type not in ALLOWED_IMAGE_TYPES:
        return None
    result = await run_in_threadpool(PrescriptionValidator().validate, upload.data, upload.content_type)
    return {
        "isValid": result.is_valid,
        "matchedKeywords": result.matched_keywords,
        "checkedAt": datetime.utcnow().isoformat(),
    }


async def submit_order(
    db: Session,
    current_user: auth.CurrentUser,
    payload: schemas.OrderCreate,
    upload: Optional[PrescriptionUpload] = None,
    idempotency_key: Optional[str] = None,
) -> Tuple[models.Order, bool]:
    """
    Validate a submission and create the order.

    Args:
        db: Database session
        current_user: Authenticated caller
        payload: Parsed submission
        upload: Optional prescription file
        idempotency_key: Client key; a repeated key returns the first order

    Returns:
        Tuple of (order, created); created is False for an idempotent replay

    Raises:
        ValidationFailed: 400 on the first failed check
        NotFound: 404 if the caller's account does not exist
        AuthorizationDenied: 403 if the caller's account is inactive
        UpstreamFailure: 500 if the prescription upload or the database fails
    """
    _ensure(validators.validate_order_items(payload.items))
    _ensure(validators.validate_shipping_address(payload.shipping_address))
    _ensure(validators.validate_total_amount(payload.total_amount))

    user_id = auth.user_reference(current_user)
    user = crud.get_user(db, user_id)
    if user is None:
        raise NotFound("User not found")
    if not user.is_active:
        raise AuthorizationDenied("User account is inactive")

    if idempotency_key:
        existing = crud.get_order_by_idempotency_key(db, user_id, idempotency_key)
        if existing is not None:
            logger.info(f"Order already exists for idempotency key {idempotency_key}: {existing.order_number}")
            return existing, False

    products = crud.get_active_products(db, [item.product_id for item in payload.items])
    if len(products) != len(payload.items):
        raise ValidationFailed("Some products are not available")
    products_by_id = {product.id: product for product in products}

    order_items = []
    stock_lines = []
    priced_lines = []
    requires_prescription = False
    for item in payload.items:
        product = products_by_id[item.product_id]
        if product.stock < item.quantity:
            raise InsufficientStock(product.name, product.stock, item.quantity)
        if product.prescription_required:
            requires_prescription = True

        price = Decimal(str(product.price))
        if item.price is not None and Decimal(str(item.price)) != price:
            logger.info(f"Client price {item.price} for product {product.id} differs from catalogue price {price}")
        order_items.append({
            "productId": product.id,
            "name": product.name,
            "price": float(price),
            "quantity": item.quantity,
            "subtotal": float(price * item.quantity),
            "imageUrl": product.image_url or "",
        })
        stock_lines.append((product, item.quantity))
        priced_lines.append((price, item.quantity))

    subtotal = validators.calculate_subtotal(priced_lines)
    shipping_cost = Decimal(config.SHIPPING_COST)
    logger.info(
        f"Order for user {user_id}: calculated total {subtotal + shipping_cost}, "
        f"claimed {payload.total_amount}"
    )
    _ensure(validators.validate_order_total(subtotal, shipping_cost, payload.total_amount))

    if requires_prescription and upload is None:
        raise ValidationFailed("A prescription is required for prescription medicines")

    clinic_name = payload.prescription_data.clinic_name if payload.prescription_data else None
    prescription = None
    if upload is not None:
        check_prescription_file(upload)
        file_url = await storage_client.upload_file(upload.data, upload.filename, upload.content_type)
        prescription = {
            "clinicName": clinic_name or "",
            "fileUrl": file_url,
            "originalName": upload.filename,
            "size": upload.size,
            "fileType": upload.content_type,
            "uploadedAt": datetime.utcnow().isoformat(),
            "clientValidated": bool(payload.prescription_data and payload.prescription_data.is_validated),
        }
        validation = await _advisory_validation(upload)
        if validation is not None:
            prescription["validation"] = validation
    elif clinic_name:
        prescription = {"clinicName": clinic_name}

    address = payload.shipping_address
    now = datetime.utcnow()
    order = models.Order(
        id=new_object_id(),
        order_number=generate_order_number(),
        user_id=user_id,
        items=order_items,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        total_amount=subtotal + shipping_cost,
        status="pending",
        payment_status="pending",
        payment_method=payload.payment_method or "cash_on_delivery",
        shipping_address={
            "fullName": address.full_name.strip(),
            "address": address.address.strip(),
            "city": address.city.strip(),
            "postalCode": (address.postal_code or "").strip(),
            "country": address.country.strip(),
            "phone": (address.phone or "").strip(),
        },
        prescription=prescription,
        requires_prescription=requires_prescription,
        notes=payload.notes or "",
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )

    uploaded_url = prescription.get("fileUrl") if prescription else None
    try:
        stored = crud.create_order(db, order, stock_lines, created_by=user_id)
    except PharmaShopError:
        if uploaded_url:
            await storage_client.delete_file(uploaded_url)
        raise

    if stored is not order:
        # a concurrent retry with the same key committed first
        if uploaded_url:
            await storage_client.delete_file(uploaded_url)
        logger.info(f"Order already exists for idempotency key {idempotency_key}: {stored.order_number}")
        return stored, False

    logger.info(f"Order created: {order.order_number} ({order.id}) for user {user_id}")
    return order, True
