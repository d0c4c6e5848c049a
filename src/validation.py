"""
Schema Validation - OpenAPI v3 schema validation utilities.

Validates Promise-declared API schemas and the objects submitted for them.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

# Fields owned by the store itself; never part of a declared API schema check
_SERVER_FIELDS = ("apiVersion", "kind", "metadata", "status")


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is a valid OpenAPI v3 / JSON Schema.

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(schema, dict):
        return False, "Invalid schema: expected an object"
    try:
        # OpenAPI 3.0 schemas are a Draft 7 subset
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_object_against_schema(
    obj: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate an object of a declared API type against its openAPIV3Schema.

    Server-managed fields are stripped first, so the schema only has to
    describe the user-facing body (spec and friends).

    Args:
        obj: The full object (apiVersion, kind, metadata, spec, ...)
        schema: The openAPIV3Schema of the API type

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not schema:
        return True, None

    body = {k: v for k, v in obj.items() if k not in _SERVER_FIELDS}
    properties = schema.get("properties")
    if isinstance(properties, dict):
        schema = dict(schema)
        schema["properties"] = {
            k: v for k, v in properties.items() if k not in _SERVER_FIELDS
        }
        if isinstance(schema.get("required"), list):
            schema["required"] = [
                r for r in schema["required"] if r not in _SERVER_FIELDS
            ]

    try:
        validator = Draft7Validator(schema)
        errors = list(validator.iter_errors(body))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"
