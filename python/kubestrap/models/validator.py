"""
kubestrap/models/validator.py

Coerces untyped data (decoded JSON from the cloud API or the doctl CLI) into a
declared type via pydantic's TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` (a pydantic model, List[Model],
    Dict[str, Any], ...).

    Raises:
        ValueError: If `obj` does not conform.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as exc:
        raise ValueError(f"Expected {expected_type}, got invalid data: {exc}") from exc
