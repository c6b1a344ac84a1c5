"""
Shared utilities and helpers.
"""

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Tuple


def serialize_for_json(obj: Any) -> Any:
    """Serialize objects that aren't JSON-serializable by default."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, (set, frozenset)):
        return sorted(obj)
    elif hasattr(obj, 'model_dump'):  # Pydantic model
        return obj.model_dump(mode="json")
    elif hasattr(obj, '__dict__'):
        return obj.__dict__
    return str(obj)


def dict_to_json_string(data: Dict) -> str:
    """Convert dict to JSON string, handling non-serializable types."""
    return json.dumps(data, default=serialize_for_json, indent=2)


def calculate_percentage_variance(actual: float, expected: float) -> float:
    """Calculate percentage variance between actual and expected."""
    if expected == 0:
        return 0.0 if actual == 0 else 1.0
    return abs(actual - expected) / abs(expected)


def closeness(a: float, b: float) -> float:
    """
    Relative closeness of two non-negative magnitudes in [0, 1].

    1 - min(1, |a - b| / max(a, b, 1))
    """
    a, b = abs(float(a)), abs(float(b))
    return 1.0 - min(1.0, abs(a - b) / max(a, b, 1))


def id_sort_key(identifier: str) -> Tuple:
    """Natural sort key so that 'POL-2' orders before 'POL-10'."""
    parts = re.split(r"(\d+)", identifier)
    return tuple(int(part) if idx % 2 else part for idx, part in enumerate(parts))
