"""
Business-rule validation for orders.

Provides validation beyond schema validation: request completeness,
server-side totals and the order status state machine.
"""
from typing import Iterable, List, Optional, Tuple
from decimal import Decimal
from . import schemas

REQUIRED_ADDRESS_FIELDS = ("full_name", "address", "city", "country")
MAX_ORDER_LINES = 100
MAX_LINE_QUANTITY = 10000

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

# Statuses an admin may pick from the back-office order screen
ADMIN_SETTABLE_STATUSES = ("confirmed", "shipped", "delivered", "cancelled")
TERMINAL_STATUSES = ("delivered", "cancelled")
CUSTOMER_CANCELLABLE_STATUSES = ("pending", "confirmed")

# pending may jump straight to shipped: the back-office allows it
STATUS_TRANSITIONS = {
    "pending": ["confirmed", "processing", "shipped", "cancelled"],
    "confirmed": ["processing", "shipped", "cancelled"],
    "processing": ["shipped", "cancelled"],
    "shipped": ["delivered"],
    "delivered": [],  # Terminal state
    "cancelled": [],  # Terminal state
}


def _camel(field: str) -> str:
    head, *rest = field.split("_")
    return head + "".join(part.title() for part in rest)


def validate_order_items(items: List[schemas.OrderItemIn]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order items are required"

    if len(items) > MAX_ORDER_LINES:
        return False, f"Order cannot contain more than {MAX_ORDER_LINES} items"

    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_shipping_address(address: Optional[schemas.ShippingAddressIn]) -> Tuple[bool, str]:
    """
    Check that a shipping address is present with every required field non-blank.

    Returns:
        Tuple of (is_valid, error_message); the message names the missing fields
    """
    if address is None:
        return False, "Shipping address is required"

    missing = [
        _camel(field) for field in REQUIRED_ADDRESS_FIELDS
        if not (getattr(address, field) or "").strip()
    ]
    if missing:
        return False, f"Complete shipping address is required. Missing: {', '.join(missing)}"

    return True, ""


def validate_total_amount(total: Optional[Decimal]) -> Tuple[bool, str]:
    if total is None or total <= 0:
        return False, "Valid total amount is required"
    return True, ""


def calculate_subtotal(lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum ``price * quantity`` over (price, quantity) pairs."""
    return sum((Decimal(str(price)) * quantity for price, quantity in lines), Decimal("0"))


def validate_order_total(subtotal: Decimal, shipping_cost: Decimal, claimed_total: Decimal) -> Tuple[bool, str]:
    """
    Validate that the client's total matches the server-computed total.

    Args:
        subtotal: Sum of line subtotals at catalogue prices
        shipping_cost: Flat shipping fee
        claimed_total: The total claimed by the client

    Returns:
        Tuple of (is_valid, error_message)
    """
    calculated_total = Decimal(str(subtotal)) + Decimal(str(shipping_cost))

    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - Decimal(str(claimed_total))) > Decimal('0.01'):
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_order_status(status: Optional[str]) -> Tuple[bool, str]:
    if status not in ORDER_STATUSES:
        return False, "Invalid order status"
    return True, ""


def validate_payment_status(payment_status: Optional[str]) -> Tuple[bool, str]:
    if payment_status not in PAYMENT_STATUSES:
        return False, "Invalid payment status"
    return True, ""


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in STATUS_TRANSITIONS:
        return False, f"Unknown status: {old_status}"

    if new_status not in STATUS_TRANSITIONS:
        return False, f"Unknown status: {new_status}"

    if old_status == new_status:
        return True, ""  # No change is valid

    if new_status not in STATUS_TRANSITIONS[old_status]:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""
