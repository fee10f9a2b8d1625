"""Output validation for turn and gate nodes.

Checks node outputs against the small JSON-schema subset node configs use
(``type``, ``enum``, ``required``, ``properties``, ``items``) so malformed
output is caught before it reaches downstream nodes.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating an output."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def _type_matches(expected: str, data: Any) -> bool:
    if expected == "object":
        return isinstance(data, dict)
    if expected == "array":
        return isinstance(data, list)
    if expected == "string":
        return isinstance(data, str)
    if expected == "number":
        return isinstance(data, int | float) and not isinstance(data, bool)
    if expected == "integer":
        if isinstance(data, bool):
            return False
        return isinstance(data, int) or (isinstance(data, float) and data.is_integer())
    if expected == "boolean":
        return isinstance(data, bool)
    if expected == "null":
        return data is None
    return True


def validate_simple_schema(schema: Any, data: Any, path: str = "$") -> list[str]:
    """
    Validate ``data`` against a JSON-schema subset.

    Error strings are prefixed with a JSONPath-like location, e.g.
    ``$.items[2].name: required``. Type and enum failures stop descent.
    """
    if not isinstance(schema, dict):
        return []

    errors: list[str] = []

    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        encoded = json.dumps(data, sort_keys=True, default=str)
        if not any(json.dumps(item, sort_keys=True, default=str) == encoded for item in enum):
            errors.append(f"{path}: value must be one of enum")
            return errors

    expected = schema.get("type") if isinstance(schema.get("type"), str) else ""
    if expected and not _type_matches(expected, data):
        errors.append(f"{path}: expected type {expected}")
        return errors

    if expected == "object" and isinstance(data, dict):
        required = schema.get("required")
        if isinstance(required, list):
            for key in required:
                if isinstance(key, str) and key not in data:
                    errors.append(f"{path}.{key}: required")
        properties = schema.get("properties")
        if isinstance(properties, dict):
            for key, child_schema in properties.items():
                if key in data:
                    errors.extend(validate_simple_schema(child_schema, data[key], f"{path}.{key}"))

    if expected == "array" and isinstance(data, list) and schema.get("items"):
        for i, item in enumerate(data):
            errors.extend(validate_simple_schema(schema["items"], item, f"{path}[{i}]"))

    return errors


class OutputValidator:
    """Validates node outputs against declared schemas."""

    def validate_schema(self, schema: dict[str, Any] | None, data: Any) -> ValidationResult:
        if not schema:
            return ValidationResult(success=True, errors=[])
        errors = validate_simple_schema(schema, data)
        if errors:
            logger.debug(f"Schema validation failed with {len(errors)} error(s)")
        return ValidationResult(success=not errors, errors=errors)
