"""Phone number and amount normalization for M-Pesa requests.

Both normalizers are pure and idempotent; neither raises on bad input.
"""
import math
import re
from typing import Any, Optional


MSISDN_RE = re.compile(r"^254(7|1)\d{8}$")
_NON_DIGITS = re.compile(r"\D+")
_LOCAL_MOBILE = re.compile(r"^[71]\d{8}$")


def normalize_msisdn(value: Any) -> str:
    """Normalize a Kenyan mobile number to `2547XXXXXXXX` / `2541XXXXXXXX`.

    Accepts local (`07…`, `01…`), bare (`7…`, `1…`) and international
    (`+254…`, `254…`, `00254…`) forms. Input that cannot be normalized is
    returned as its digits (at most 12), which `is_valid_msisdn` rejects.
    """
    digits = _NON_DIGITS.sub("", str(value if value is not None else "").strip())
    # stray international prefix or doubled trunk zero
    digits = digits.lstrip("0")
    if digits.startswith("254"):
        rest = digits[3:].lstrip("0")
        return ("254" + rest)[:12]
    if _LOCAL_MOBILE.match(digits):
        return "254" + digits
    return digits[:12]


def is_valid_msisdn(msisdn: str) -> bool:
    return bool(msisdn and MSISDN_RE.match(msisdn))


def normalize_amount(value: Any) -> Optional[int]:
    """Coerce to a whole number of KES, or None when not a finite value >= 1."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    # half-up rounding
    amount = math.floor(number + 0.5)
    if amount < 1:
        return None
    return int(amount)


def mask_msisdn(msisdn: str) -> str:
    """`254712345678` -> `254712***678` for logs."""
    return re.sub(r"^(\d{6})\d{3}(\d{3})$", r"\1***\2", msisdn or "")
