"""
Attribute validation - JSON Schema (Draft 7) checks for resource types.

Providers describe each resource type's attributes with a JSON Schema.
Attributes that still hold ``${...}`` expressions are only known after
resolution, so errors on those attributes are ignored at plan time.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

from expressions import has_expressions, to_raw

logger = logging.getLogger(__name__)


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a resource type schema is itself a valid JSON Schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def schema_errors(
    attributes: Dict[str, Any], schema: Dict[str, Any]
) -> List[str]:
    """
    Collect validation errors for a set of attributes.

    Args:
        attributes: Parsed attribute values (may contain expressions)
        schema: Draft 7 JSON Schema for the resource type

    Returns:
        Error messages as ``path: message``; empty when valid
    """
    pending = {key for key, value in attributes.items() if has_expressions(value)}
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)

    messages = []
    for error in validator.iter_errors(to_raw(attributes)):
        path = list(error.absolute_path)
        if path and path[0] in pending:
            continue
        rendered = ".".join(str(p) for p in path) or "(root)"
        messages.append(f"{rendered}: {error.message}")
    return messages


def validate_attributes(
    attributes: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate resource attributes against a resource type schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    errors = schema_errors(attributes, schema)
    if not errors:
        return True, None
    return False, "; ".join(errors)
