"""Human-readable identifiers for audit records and workflow events."""

from datetime import datetime
import secrets


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_id(prefix: str) -> str:
    """
    Build an id like APR-LX3K9Q2A-4F1C9B.

    Millisecond timestamp in base36 keeps ids roughly sortable,
    the random suffix separates ids minted in the same millisecond.
    """
    millis = int(datetime.now().timestamp() * 1000)
    return f"{prefix}-{_base36(millis)}-{secrets.token_hex(3)}".upper()
