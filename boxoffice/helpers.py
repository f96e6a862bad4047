import hmac
import re
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ----------------------------
# Time & ids
# ----------------------------
def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts_ms: Optional[int]) -> Optional[str]:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat()


# ----------------------------
# Input checks
# ----------------------------
def is_valid_email(email: Optional[str]) -> bool:
    if not email or len(email) > 254:
        return False
    return _EMAIL.match(email.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money (integer cents)
# ----------------------------
def percent_of(amount_cents: int, percent: Union[int, float, str]) -> int:
    """`percent`% of `amount_cents`, rounded half-up to a whole cent."""
    exact = Decimal(amount_cents) * Decimal(str(percent)) / 100
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"
