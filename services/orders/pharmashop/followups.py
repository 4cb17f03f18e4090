"""
Follow-up work scheduled after an order response has been sent.

These tasks run from FastAPI's background task queue with their own database
session. They retry a bounded number of times and only log failures; the
order they follow is already committed.
"""
import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .config import CART_CLEAR_ATTEMPTS
from .database import SessionLocal

logger = logging.getLogger(__name__)

RETRY_BACKOFF = 0.5  # seconds, doubled after each failed attempt


def clear_cart_followup(user_id: str, attempts: int = CART_CLEAR_ATTEMPTS, backoff: float = RETRY_BACKOFF) -> bool:
    """
    Empty a user's server-side cart after checkout.

    Args:
        user_id: Canonical user reference
        attempts: Maximum number of tries
        backoff: Delay before the second try

    Returns:
        True if the cart was cleared, False once every attempt failed
    """
    delay = backoff
    for attempt in range(1, attempts + 1):
        db = SessionLocal()
        try:
            crud.clear_cart(db, user_id)
            logger.info(f"Cleared cart for user {user_id}")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not clear cart for user {user_id} (attempt {attempt}/{attempts}): {e}")
        finally:
            db.close()
        if attempt < attempts:
            time.sleep(delay)
            delay *= 2

    logger.error(f"Giving up clearing cart for user {user_id} after {attempts} attempts")
    return False
