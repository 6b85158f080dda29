"""Central JSON utilities using orjson."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import orjson

# orjson.JSONDecodeError subclasses ValueError
JSONDecodeError = orjson.JSONDecodeError


def _default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def dumps(obj: Any, *, indent: bool = False) -> str:
    """Dump object to a JSON string."""
    option = orjson.OPT_INDENT_2 if indent else None
    return orjson.dumps(obj, default=_default, option=option).decode("utf-8")


def loads(obj: str | bytes) -> Any:
    """Load object from JSON string or bytes."""
    return orjson.loads(obj)
