from datetime import datetime, timezone
import math
from typing import Any, Mapping, Optional


def first_present(values: Optional[Mapping[str, Any]], *names: str) -> Any:
    """Return the first field in ``names`` that holds a value.

    Decoded messages carry the same quantity under several names (e.g.
    ``enhanced_altitude`` and ``altitude``); the order of ``names`` is the
    precedence. Falsy values such as ``0`` count as present.
    """
    if not values:
        return None
    for name in names:
        value = values.get(name)
        if value is not None:
            return value
    return None


def as_utc(value: Any) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_int(value: Any) -> Optional[int]:
    value = optional_float(value)
    return int(round(value)) if value is not None else None


def optional_float(value: Any) -> Optional[float]:
    """Coerce to float; unparseable, NaN and infinite samples count as absent."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None
