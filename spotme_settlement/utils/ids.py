"""Identifier parsing helpers"""

import uuid
from typing import Optional, Union


def parse_uuid(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    """Parse a UUID, returning None for missing or malformed input"""
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
