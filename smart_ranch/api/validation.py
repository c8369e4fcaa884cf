"""Request payload helpers for the HTTP API."""

import math
import re
from typing import Any, Optional

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")


def normalize_base64(value: Any) -> Optional[str]:
    """Strip a data-URI prefix; None for non-strings and blank strings."""
    if not isinstance(value, str) or not value.strip():
        return None
    if "," in value:
        return value.split(",", 1)[1]
    return value


def is_valid_base64(value: Optional[str], max_bytes: int) -> bool:
    """Check the alphabet and the decoded size estimate against max_bytes."""
    if not value:
        return False
    if math.ceil(len(value) * 3 / 4) > max_bytes:
        return False
    return bool(_BASE64_PATTERN.match(value))


def parse_int(value: Any, default: int) -> int:
    """Parse a query-string integer, falling back to default."""
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default
