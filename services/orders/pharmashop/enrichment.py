"""
Read-side shaping of orders: user info join and prescription display data.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from . import cache, crud, models, schemas
from .references import normalize_user_reference

logger = logging.getLogger(__name__)

MISSING_USER_NAME = "Utilisateur non trouvé"
_SIZE_UNITS = ("B", "KB", "MB", "GB")


def missing_user(reference: Optional[str] = None) -> dict:
    return {"id": reference, "name": MISSING_USER_NAME, "email": ""}


def lookup_users(db: Session, references: List[str]) -> Dict[str, dict]:
    """
    Display info for each reference, from cache when possible.

    Returns:
        Mapping of canonical reference to {id, name, email}; unknown users are absent
    """
    found: Dict[str, dict] = {}
    pending = []
    for reference in references:
        cached = cache.get_cache(cache.user_key(reference))
        if cached is not None:
            found[reference] = cached
        else:
            pending.append(reference)

    for user in crud.get_users_by_ids(db, pending):
        info = {"id": user.id, "name": user.name, "email": user.email}
        found[user.id] = info
        cache.set_cache(cache.user_key(user.id), info)

    return found


def enrich_orders(db: Session, orders: List[models.Order]) -> List[dict]:
    """
    Serialize orders with the purchasing account attached as ``userAccount``.

    Stored ``user_id`` values are normalized before the join; a miss yields
    placeholder user info instead of an error.
    """
    references = [normalize_user_reference(order.user_id) for order in orders]
    users = lookup_users(db, sorted({ref for ref in references if ref}))

    enriched = []
    for order, reference in zip(orders, references):
        if reference not in users:
            logger.warning(f"Order {order.id} references unknown user {order.user_id!r}")
        account = users.get(reference) or missing_user(reference)
        data = schemas.OrderWithUser.model_validate(order).model_copy(
            update={"user_account": schemas.UserAccount(**account)}
        )
        enriched.append(data.model_dump(by_alias=True, mode="json"))
    return enriched


def format_file_size(size: Optional[int]) -> str:
    """
    Human readable file size.

    >>> format_file_size(1536)
    '1.5 KB'
    """
    if not size:
        return "0 B"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[unit]}"


def _format_date(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def format_prescription(order: models.Order) -> Optional[schemas.PrescriptionInfo]:
    """
    Prescription metadata ready for display.

    Handles the current single-file shape (``prescription``) and the legacy
    list of image URLs (``prescription_images``).
    """
    prescription = order.prescription or {}
    legacy_images = order.prescription_images or []

    if prescription.get("fileUrl"):
        size = prescription.get("size")
        files = [schemas.PrescriptionFile(
            url=prescription["fileUrl"],
            filename=prescription.get("originalName"),
            size=size,
            size_formatted=format_file_size(size),
            type=prescription.get("fileType"),
            uploaded_at=_format_date(prescription.get("uploadedAt")),
        )]
        return schemas.PrescriptionInfo(
            clinic_name=prescription.get("clinicName"),
            files=files,
            legacy=False,
            validation=prescription.get("validation"),
        )

    if legacy_images:
        files = [
            schemas.PrescriptionFile(url=url, filename=url.rsplit("/", 1)[-1], uploaded_at=_format_date(order.created_at))
            for url in legacy_images
        ]
        return schemas.PrescriptionInfo(clinic_name=prescription.get("clinicName"), files=files, legacy=True)

    if prescription.get("clinicName"):
        return schemas.PrescriptionInfo(clinic_name=prescription["clinicName"])

    return None


def order_detail(db: Session, order: models.Order) -> dict:
    """Single-order view: user info plus formatted prescription."""
    data = enrich_orders(db, [order])[0]
    info = format_prescription(order)
    data["prescriptionInfo"] = info.model_dump(by_alias=True, mode="json") if info else None
    return data
