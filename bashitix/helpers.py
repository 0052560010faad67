import time
import re
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    if len(email) > 255:
        return False
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_strong_password(password: Optional[str]) -> bool:
    if not password or len(password) < 8:
        return False
    return (
        re.search(r"[A-Z]", password) is not None
        and re.search(r"[a-z]", password) is not None
        and re.search(r"[0-9]", password) is not None
    )


def is_valid_full_name(name: Optional[str]) -> bool:
    if not isinstance(name, str):
        return False
    return 2 <= len(name.strip()) <= 100


def qr_code_url(text: str) -> str:
    return (
        "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data="
        + quote(text, safe="")
    )
