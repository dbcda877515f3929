"""Schema gate backed by pydantic type adapters.

A flow schema is anything pydantic can build a ``TypeAdapter`` for: builtin
types (``int``, ``list[str]``), ``BaseModel`` subclasses, ``TypedDict`` or
``typing.Any``. An existing ``TypeAdapter`` is used as-is.
"""

from __future__ import annotations

from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from .errors import FlowValidationError


def to_type_adapter(schema: Any) -> TypeAdapter | None:
    """Build a type adapter for a schema, or None when no schema is declared."""
    if schema is None:
        return None
    if isinstance(schema, TypeAdapter):
        return schema
    return TypeAdapter(schema)


def parse(adapter: TypeAdapter | None, value: Any, what: str = "input") -> Any:
    """
    Validate a value against an adapter and return the parsed value.

    Validation is strict: values are never coerced across types, so the
    string "21" or the bool True do not satisfy an ``int`` schema. Mappings
    are still accepted for ``BaseModel`` schemas.

    Args:
        adapter: Adapter to validate with; None passes the value through
        value: Untyped value
        what: Label used in the error message ("input", "output", "chunk")

    Raises:
        FlowValidationError: If the value does not match the schema
    """
    if adapter is None:
        return value
    try:
        return adapter.validate_python(value, strict=True)
    except PydanticValidationError as e:
        raise FlowValidationError(
            f"Invalid {what}: {e.error_count()} validation error(s)",
            errors=e.errors(include_url=False),
        ) from e


def to_json_schema(adapter: TypeAdapter | None) -> dict[str, Any] | None:
    """JSON schema of an adapter (None when no schema is declared)."""
    if adapter is None:
        return None
    return adapter.json_schema()


def to_json_value(value: Any) -> Any:
    """Convert a value to plain JSON-compatible python data."""
    return to_jsonable_python(value, fallback=str)
