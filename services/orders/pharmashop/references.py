"""
Identifier helpers.

Documents are keyed by 24-character hexadecimal ids. Older order rows carry
their ``user_id`` in several shapes (plain string, ``{"$oid": ...}`` export,
``ObjectId("...")`` rendering, upper-cased hex), so every read and write of a
user reference goes through ``normalize_user_reference``.
"""
import re
import secrets
import string
import time
from typing import Any, List, Optional

REFERENCE_PATTERN = re.compile(r"^[0-9a-f]{24}$")
_WRAPPED_PATTERN = re.compile(r"""^ObjectId\(\s*['"]?([0-9a-fA-F]{24})['"]?\s*\)$""")
_BASE36 = string.digits + string.ascii_uppercase


def new_object_id() -> str:
    """Generate a new 24-character lowercase hex identifier."""
    return secrets.token_hex(12)


def is_valid_reference(value: Any) -> bool:
    """Return True if ``value`` is already a canonical reference string."""
    return isinstance(value, str) and bool(REFERENCE_PATTERN.match(value))


def normalize_user_reference(value: Any) -> Optional[str]:
    """
    Coerce a stored or token-supplied user reference to its canonical form.

    Args:
        value: A reference in any of the historical shapes

    Returns:
        The canonical lowercase 24-hex string, or None if ``value`` cannot be
        interpreted as a reference
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, dict):
        value = value.get("$oid")
        if value is None:
            return None

    if isinstance(value, int):
        value = format(value, "024x") if value >= 0 else ""

    candidate = str(value).strip()
    wrapped = _WRAPPED_PATTERN.match(candidate)
    if wrapped:
        candidate = wrapped.group(1)

    candidate = candidate.lower()
    if REFERENCE_PATTERN.match(candidate):
        return candidate
    return None


def user_reference_variants(reference: str) -> List[str]:
    """
    Stored shapes that ``normalize_user_reference`` maps to ``reference``.

    Used to match legacy rows when filtering orders by owner.
    """
    return [
        reference,
        reference.upper(),
        f'ObjectId("{reference}")',
        f"ObjectId('{reference}')",
    ]


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def _timestamp_ms(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def generate_order_number(now: Optional[float] = None) -> str:
    """
    Build a human readable order number ``ORD-<unix ms>-<9 base36 chars>``.

    Two numbers generated at different milliseconds always differ; numbers
    generated within the same millisecond only differ by their random part.
    """
    return f"ORD-{_timestamp_ms(now)}-{_random_base36(9)}"


def generate_transaction_id(now: Optional[float] = None) -> str:
    """Build a payment transaction id ``TXN-<unix ms>-<9 base36 chars>``."""
    return f"TXN-{_timestamp_ms(now)}-{_random_base36(9)}"
