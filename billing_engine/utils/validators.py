import re

from billing_engine.errors import ValidationError

_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,64}$")
_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]


def require_id(val, field: str) -> str:
    """Organization / plan identifiers: short, no whitespace."""
    s = clean_str(val if val is None else str(val), max_len=128)
    if not s:
        raise ValidationError(f"{field} is required", field=field)
    if not _ID_RE.match(s):
        raise ValidationError(f"{field} is not a valid identifier", field=field)
    return s


def parse_bool(val, field: str, default: bool = False) -> bool:
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValidationError(f"{field} must be a boolean", field=field)
