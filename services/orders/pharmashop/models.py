"""
SQLAlchemy ORM models for the orders service.

Each table mirrors one document collection of the storefront: users,
products, orders, order_events, carts and payments. Document-shaped
parts (line items, addresses, prescription metadata) are JSON columns.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Text, Boolean, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from .database import Base
from .references import new_object_id

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
Document = JSON().with_variant(JSONB, "postgresql")


class User(Base):
    """
    Storefront account. Only read by this service.

    Attributes:
        id (str): 24-hex document id
        name (str): Display name
        email (str): Email address
        role (str): "user" or "admin"
        is_active (bool): Whether the account may place orders
    """
    __tablename__ = "users"

    id = Column(String(24), primary_key=True, default=new_object_id)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(String, default="user", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """
    Catalogue product referenced by orders and carts.

    Attributes:
        id (str): 24-hex document id
        name (str): Product name (denormalized into order lines)
        price (Decimal): Unit price in FCFA
        stock (int): Units available; decremented by order creation
        prescription_required (bool): Whether ordering needs a prescription
        is_active (bool): Inactive products cannot be ordered
    """
    __tablename__ = "products"

    id = Column(String(24), primary_key=True, default=new_object_id)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    prescription_required = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    image_url = Column(String, nullable=True, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """
    A purchase, its line items, shipping target and lifecycle status.

    Attributes:
        id (str): 24-hex document id
        order_number (str): Human readable number, e.g. "ORD-1712345678901-K3J9Z0QWE"
        user_id (str): Purchasing account (normalized reference)
        items (list): Line items {productId, name, price, quantity, subtotal, imageUrl}
        subtotal (Decimal): Sum of line subtotals
        shipping_cost (Decimal): Flat shipping fee
        total_amount (Decimal): subtotal + shipping_cost
        status (str): Fulfilment status, starts at "pending"
        payment_status (str): "pending", "paid", "failed" or "refunded"
        shipping_address (dict): fullName, address, city, postalCode, country, phone
        prescription (dict): Single uploaded prescription file metadata
        prescription_images (list): Legacy multi-image prescription URLs
    """
    __tablename__ = "orders"

    id = Column(String(24), primary_key=True, default=new_object_id)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    items = Column(Document, nullable=False, default=list)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    payment_method = Column(String, nullable=False, default="cash_on_delivery")
    shipping_address = Column(Document, nullable=False, default=dict)
    prescription = Column(Document, nullable=True)
    prescription_images = Column(Document, nullable=True)
    requires_prescription = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True, default="")
    admin_notes = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "cancelled")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(24), ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Cart(Base):
    """Server-side cart, one per user. ``items`` holds {productId, name, price, quantity} lines."""
    __tablename__ = "carts"

    id = Column(String(24), primary_key=True, default=new_object_id)
    user_id = Column(String, unique=True, index=True, nullable=False)
    items = Column(Document, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Payment(Base):
    """
    A (simulated) payment attempt for an order.

    Attributes:
        transaction_id (str): "TXN-<ms>-<random>"
        status (str): "pending", "success" or "failed"
        response (dict): Provider response as recorded
    """
    __tablename__ = "payments"

    id = Column(String(24), primary_key=True, default=new_object_id)
    order_id = Column(String(24), ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_method = Column(String, nullable=False)
    phone_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    transaction_id = Column(String, unique=True, index=True, nullable=False)
    external_transaction_id = Column(String, nullable=True)
    response = Column(Document, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
