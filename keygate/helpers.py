import time
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional

KEY_ALPHABET = string.ascii_uppercase + string.digits
KEY_LENGTH = 12


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def start_of_day_ts(ts: float | None = None) -> float:
    dt = datetime.fromtimestamp(now_ts() if ts is None else ts,
                                tz=timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return re.match(r"^https?://[^\s/$.?#][^\s]*$", url.strip()) is not None


def generate_key_value(length: int = KEY_LENGTH) -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


def new_order_id() -> str:
    return uuid.uuid4().hex


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
