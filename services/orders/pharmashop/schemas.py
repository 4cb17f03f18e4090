"""
Pydantic schemas for request/response validation in the orders service.

These schemas define the structure of data for API requests and responses.
Fields are snake_case in Python and camelCase on the wire.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema exposing camelCase aliases."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class OrderItemIn(CamelModel):
    """Schema for a requested order line."""
    product_id: str = Field(..., description="Product document id")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    price: Optional[Decimal] = Field(default=None, ge=0, description="Unit price seen by the client")


class ShippingAddressIn(CamelModel):
    """Shipping address as submitted; completeness is checked by validators."""
    full_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class PrescriptionData(CamelModel):
    """Prescription details asserted by the client."""
    clinic_name: Optional[str] = None
    is_validated: Optional[bool] = None


class OrderCreate(CamelModel):
    """Schema for creating a new order."""
    items: List[OrderItemIn] = Field(default_factory=list, description="Order line items")
    shipping_address: Optional[ShippingAddressIn] = None
    total_amount: Optional[Decimal] = None
    payment_method: str = "cash_on_delivery"
    prescription_data: Optional[PrescriptionData] = None
    notes: str = ""


class OrderLine(CamelModel):
    """Schema for a stored order line."""
    product_id: str
    name: str
    price: float
    quantity: int
    subtotal: float
    image_url: str = ""


class ShippingAddress(CamelModel):
    full_name: str
    address: str
    city: str
    postal_code: str = ""
    country: str
    phone: str = ""


class UserAccount(CamelModel):
    id: Optional[str] = None
    name: str
    email: str = ""


class Order(CamelModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order document id
        order_number (str): Human readable order number
        user_id (str): Purchasing account
        items (List[OrderLine]): Order line items
        total_amount (float): Amount charged, shipping included
        status (str): Fulfilment status
        payment_status (str): Payment status
        created_at (datetime): When the order was created
    """
    id: str
    order_number: str
    user_id: str
    items: List[OrderLine]
    subtotal: float
    shipping_cost: float
    total_amount: float
    status: str
    payment_status: str
    payment_method: str
    shipping_address: ShippingAddress
    prescription: Optional[Dict[str, Any]] = None
    prescription_images: Optional[List[str]] = None
    requires_prescription: bool = False
    notes: Optional[str] = ""
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderWithUser(Order):
    """Order joined with the purchasing account's display info."""
    user_account: Optional[UserAccount] = None


class PrescriptionFile(CamelModel):
    url: str
    filename: Optional[str] = None
    size: Optional[int] = None
    size_formatted: Optional[str] = None
    type: Optional[str] = None
    uploaded_at: Optional[str] = None


class PrescriptionInfo(CamelModel):
    """Prescription metadata formatted for display."""
    clinic_name: Optional[str] = None
    files: List[PrescriptionFile] = Field(default_factory=list)
    legacy: bool = False
    validation: Optional[Dict[str, Any]] = None


class OrderDetail(OrderWithUser):
    prescription_info: Optional[PrescriptionInfo] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderStatusUpdate(CamelModel):
    """Admin status update; required fields are checked by the handler."""
    order_id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    notes: Optional[str] = None


class AdminStatusUpdate(CamelModel):
    status: Optional[str] = None


class OrderEvent(CamelModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, cancelled, payment_updated)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime


class CartItemIn(CamelModel):
    product_id: Optional[str] = None
    quantity: int = 1


class CartItemUpdate(CamelModel):
    product_id: Optional[str] = None
    quantity: int


class PaymentCreate(CamelModel):
    order_id: Optional[str] = None
    payment_method: Optional[str] = None
    phone_number: Optional[str] = None


class PaymentCallback(CamelModel):
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    external_transaction_id: Optional[str] = None


class PaymentResult(CamelModel):
    payment_id: str
    transaction_id: str
    status: str
    message: str


class PrescriptionValidation(CamelModel):
    """Advisory result of running the keyword gate over a prescription image."""
    is_valid: bool
    matched_keywords: List[str]
    match_count: int
    text: str
    state: str
