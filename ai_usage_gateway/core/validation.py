"""
Schema validation for structured model output.
"""

from typing import Any, Dict, List, Type, TypeVar, Union

from pydantic import TypeAdapter, ValidationError

from .errors import OutputValidationError

T = TypeVar("T")


def json_schema_for(schema: Type[Any]) -> Dict[str, Any]:
    """JSON Schema describing a pydantic model or adaptable type."""
    return TypeAdapter(schema).json_schema()


def validate_output(schema: Type[T], raw: Union[str, bytes, Any]) -> T:
    """Validate a provider response against a declared shape.

    Args:
        schema: pydantic model class or any type pydantic can adapt
        raw: JSON text, or an already-decoded value

    Returns:
        The validated value

    Raises:
        OutputValidationError: With one violation per failing field
    """
    adapter = TypeAdapter(schema)
    try:
        if isinstance(raw, (str, bytes)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except ValidationError as e:
        violations = _violations(e)
        raise OutputValidationError(
            f"Output failed schema validation with {len(violations)} violation(s)",
            violations
        ) from e


def _violations(error: ValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "loc": ".".join(str(part) for part in item["loc"]) or "$",
            "type": item["type"],
            "message": item["msg"],
        }
        for item in error.errors()
    ]


def summarize_value(schema: Type[T], value: T) -> str:
    """Compact JSON text of a validated value, for ledger summaries."""
    return TypeAdapter(schema).dump_json(value).decode("utf-8")
