"""
Helpers for statuses and types stored as UPPERCASE VARCHAR(50).

Request statuses, deal statuses, distribution types and platform entry
types are Python Enums at the API and service layer but plain strings in
the database:

    DistributionType.PARTIAL -> "PARTIAL" -> distribution_requests.distribution_type

Services compare the stored string against the Enum with is_status /
status_in instead of converting rows back to Enums.
"""

from enum import Enum
from typing import Any, Optional, Set, Type, TypeVar


E = TypeVar('E', bound=Enum)

VALID_DISTRIBUTION_TYPES = {"PARTIAL", "FINAL"}


def get_enum_value(value: Any) -> Optional[str]:
    """DistributionType.FINAL -> 'FINAL'; strings pass through; None stays None."""
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def to_enum(value: Any, enum_class: Type[E]) -> Optional[E]:
    """Stored string to Enum member, or None when it is not a member."""
    if value is None or isinstance(value, enum_class):
        return value
    try:
        return enum_class(value)
    except ValueError:
        return None


def is_status(db_value: Optional[str], expected: Enum) -> bool:
    """
    True when a stored status equals the given Enum.

        >>> is_status(request.status, DistributionRequestStatus.APPROVED)
    """
    return db_value is not None and get_enum_value(db_value) == expected.value


def status_in(db_value: Optional[str], *expected: Enum) -> bool:
    return db_value is not None and get_enum_value(db_value) in {e.value for e in expected}


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Accept 'partial' for 'PARTIAL' in request bodies.

    Unknown values are returned unchanged so pydantic reports them.
    """
    if isinstance(value, str) and value.upper() in valid_values:
        return value.upper()
    return value
