"""
Shopping cart.

``CartStore`` keeps the selected lines (product id, name, price, quantity)
in insertion order and is persisted as the ``items`` document of a user's
cart row. Checkout sends ``CartStore.to_items()`` as the order's items.
"""
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from . import auth, crud, schemas
from .database import get_db
from .exceptions import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["cart"])


@dataclass
class CartLine:
    productId: str
    name: str
    price: float
    quantity: int

    @property
    def subtotal(self) -> float:
        return float(Decimal(str(self.price)) * self.quantity)


class CartStore:
    def __init__(self, lines: Optional[List[CartLine]] = None):
        self._lines: Dict[str, CartLine] = {}
        for line in lines or []:
            self._lines[line.productId] = line

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._lines

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def get(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def add(self, product_id: str, name: str, price: float, quantity: int = 1) -> CartLine:
        """Add ``quantity`` units, merging with an existing line for the same product."""
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        line = self._lines.get(product_id)
        if line is None:
            line = CartLine(productId=product_id, name=name, price=price, quantity=quantity)
            self._lines[product_id] = line
        else:
            line.quantity += quantity
        return line

    def set_quantity(self, product_id: str, quantity: int, price: Optional[float] = None) -> None:
        """Set a line's quantity; zero removes the line."""
        if quantity < 0:
            raise ValueError("quantity cannot be negative")
        if quantity == 0:
            self.remove(product_id)
            return
        line = self._lines[product_id]
        line.quantity = quantity
        if price is not None:
            line.price = price

    def remove(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    @property
    def total_amount(self) -> float:
        return float(sum((Decimal(str(line.price)) * line.quantity for line in self._lines.values()), Decimal("0")))

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def to_items(self) -> List[dict]:
        """Order submission payload: ``[{productId, quantity, price}]``."""
        return [
            {"productId": line.productId, "quantity": line.quantity, "price": line.price}
            for line in self._lines.values()
        ]

    def to_dict(self) -> dict:
        return {"items": [asdict(line) for line in self._lines.values()]}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CartStore":
        lines = []
        for raw in (data or {}).get("items", []):
            lines.append(CartLine(
                productId=str(raw["productId"]),
                name=raw.get("name", ""),
                price=float(raw.get("price", 0)),
                quantity=int(raw.get("quantity", 1)),
            ))
        return cls(lines)


def load_cart(db: Session, user_id: str) -> CartStore:
    cart = crud.get_cart(db, user_id)
    return CartStore.from_dict({"items": cart.items if cart else []})


def save_cart(db: Session, user_id: str, store: CartStore) -> None:
    crud.save_cart_items(db, user_id, store.to_dict()["items"])


@router.get("")
def get_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the caller's cart with product details.

    Lines whose product no longer exists are left out.
    """
    user_id = auth.user_reference(current_user)
    store = load_cart(db, user_id)
    products = {p.id: p for p in crud.get_active_products(db, [line.productId for line in store.lines])}

    items = []
    for line in store.lines:
        product = products.get(line.productId)
        if product is None:
            continue
        items.append({
            **asdict(line),
            "subtotal": line.subtotal,
            "product": {
                "id": product.id,
                "name": product.name,
                "price": float(product.price),
                "stock": product.stock,
                "prescriptionRequired": product.prescription_required,
                "imageUrl": product.image_url or "",
            },
        })

    return {
        "success": True,
        "data": {
            "items": items,
            "totalAmount": sum(item["subtotal"] for item in items),
            "totalItems": sum(item["quantity"] for item in items),
        },
    }


@router.post("")
def add_to_cart(
    payload: schemas.CartItemIn,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Add a product to the cart.

    Raises:
        ValidationFailed: 400 on bad input or insufficient stock
        NotFound: 404 if the product does not exist or is inactive
    """
    if not payload.product_id or payload.quantity < 1:
        raise ValidationFailed("Valid product ID and quantity required")

    user_id = auth.user_reference(current_user)
    products = crud.get_active_products(db, [payload.product_id])
    if not products:
        raise NotFound("Product not found or unavailable")
    product = products[0]

    store = load_cart(db, user_id)
    existing = store.get(product.id)
    requested = payload.quantity + (existing.quantity if existing else 0)
    if product.stock < requested:
        message = "Insufficient stock for requested quantity" if existing else "Insufficient stock"
        raise ValidationFailed(message)

    store.add(product.id, product.name, float(product.price), payload.quantity)
    save_cart(db, user_id, store)
    return {"success": True, "message": "Item added to cart successfully"}


@router.put("")
def update_cart_item(
    payload: schemas.CartItemUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Change a line's quantity; 0 removes it. The line price is refreshed from the catalogue."""
    if not payload.product_id or payload.quantity < 0:
        raise ValidationFailed("Valid product ID and quantity required")

    user_id = auth.user_reference(current_user)
    store = load_cart(db, user_id)
    if payload.product_id not in store:
        raise NotFound("Item not in cart")

    if payload.quantity == 0:
        store.remove(payload.product_id)
    else:
        products = crud.get_active_products(db, [payload.product_id])
        if not products:
            raise NotFound("Product not found or unavailable")
        product = products[0]
        if product.stock < payload.quantity:
            raise ValidationFailed("Insufficient stock")
        store.set_quantity(payload.product_id, payload.quantity, price=float(product.price))

    save_cart(db, user_id, store)
    return {"success": True, "message": "Cart updated successfully"}


@router.delete("")
def clear_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    user_id = auth.user_reference(current_user)
    crud.clear_cart(db, user_id)
    return {"success": True, "message": "Cart cleared successfully"}
