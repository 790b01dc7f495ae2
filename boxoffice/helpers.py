import math
import time
import hmac
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import bcrypt


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_payment_ref() -> str:
    return f"pay_{uuid.uuid4().hex}"


def new_ticket_key() -> str:
    return f"TCK-{uuid.uuid4().hex[:12].upper()}"


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    # floats go through str() so 49.99 stays 49.99
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


# ----------------------------
# Time parsing
# ----------------------------
def _finite(ts: float, raw) -> float:
    if not math.isfinite(ts):
        raise ValueError(f"invalid timestamp: {raw!r}")
    return ts


def parse_ts(value) -> Optional[float]:
    """
    Epoch seconds from a number, a numeric string or an ISO-8601 string
    (naive values are taken as UTC). None and "" mean no timestamp.
    Raises ValueError for anything else.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _finite(float(value), value)
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    s = value.strip()
    try:
        return _finite(float(s), value)
    except ValueError:
        pass
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ValueError(f"invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ----------------------------
# Passwords (bcrypt)
# ----------------------------
BCRYPT_ROUNDS = 12


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"),
                              hashed.encode("utf-8"))
    except ValueError:
        # malformed hash, or a password over bcrypt's 72 byte limit
        return False
