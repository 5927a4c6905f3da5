import time
import re
import secrets
import string
from datetime import datetime, timezone
import hmac
from typing import Optional


CONFIRMATION_ALPHABET = string.ascii_uppercase + string.digits
CONFIRMATION_LENGTH = 8


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_id() -> str:
    return secrets.token_hex(16)


def generate_confirmation_id() -> str:
    return "".join(
        secrets.choice(CONFIRMATION_ALPHABET)
        for _ in range(CONFIRMATION_LENGTH)
    )


def new_payment_reference(prefix: str = "CMF") -> str:
    # <prefix>_<millis>_<9 random base36 chars>
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def format_date(ts: float | None) -> str:
    if ts is None:
        return "TBA"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(
        "%A, %B %d, %Y"
    )
