"""
JSON serialization utilities for migration records and reports.

Legacy rows and reports carry values that the standard encoder rejects:
UUIDs, datetimes, dates, Decimals (credit limits, prices) and enums.
This module provides an encoder covering them.

Example:
    >>> from migrationsuite.serialization import json_dumps, json_loads
    >>> from decimal import Decimal
    >>>
    >>> json_str = json_dumps({"credit_limit": Decimal("1500.00")})
    >>> json_loads(json_str)
    {'credit_limit': '1500.00'}
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class MigrationJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for migration values.

    Supports:
    - UUID objects: Converted to string representation
    - datetime and date objects: Converted to ISO 8601 strings
    - Decimal objects: Converted to strings (no float rounding)
    - Enum members: Converted to their value
    """

    def default(self, obj: Any) -> Any:
        """
        Convert non-serializable objects to JSON-serializable formats.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation

        Raises:
            TypeError: If object type is not supported
        """
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Serialize object to JSON string with migration type support.

    Args:
        obj: Object to serialize
        indent: Indentation for pretty-printed output (optional)

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=MigrationJSONEncoder, indent=indent)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON string to Python object.

    UUID, datetime and Decimal strings are NOT converted back to their
    original types.

    Args:
        s: JSON string to deserialize

    Returns:
        Python object representation
    """
    return json.loads(s)


__all__ = [
    "MigrationJSONEncoder",
    "json_dumps",
    "json_loads",
]
