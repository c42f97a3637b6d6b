"""
ahura/models/validator.py

Validates loosely-typed data (JSON rows, parsed YAML) against a pydantic-based
type using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` and return the coerced value.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Expected {expected_type}, got invalid data: {e}") from e
