"""Data migrations for schema changes.

Given a JSON Schema and the template's data examples, propose per-field
fixes that would make each example conform, and apply the ones that can be
done automatically.
"""
from __future__ import annotations

import copy
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from models.schemas import DataExample, MigrationDetectionResult, MigrationSuggestion

logger = logging.getLogger(__name__)


JsonSchema = Dict[str, Any]

_INDEX_SEGMENT_RE = re.compile(r"\[(\d+)\]")

_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no"}


def detect_migrations(schema: Optional[JsonSchema], examples: List[DataExample]) -> MigrationDetectionResult:
    """Check every example against ``schema`` and collect suggested fixes."""
    if not schema or not examples:
        return MigrationDetectionResult(compatible=True, migrations=[])

    migrations: List[MigrationSuggestion] = []
    for example in examples:
        migrations.extend(_detect_object(example, example.data, schema, "$"))

    if migrations:
        logger.info(
            f"[SCHEMA] {len(migrations)} migration(s) needed across {len(examples)} example(s)"
        )
    return MigrationDetectionResult(compatible=not migrations, migrations=migrations)


def _detect_object(
    example: DataExample,
    data: Dict[str, Any],
    schema: JsonSchema,
    base_path: str,
) -> List[MigrationSuggestion]:
    migrations: List[MigrationSuggestion] = []
    if schema.get("type") != "object" or not schema.get("properties"):
        return migrations

    properties: Dict[str, Any] = schema["properties"]
    required = set(schema.get("required") or [])

    for name, prop in properties.items():
        path = f"{base_path}.{name}"
        if name not in data:
            if name in required:
                migrations.append(
                    MigrationSuggestion(
                        example_id=example.id,
                        example_name=example.name,
                        path=path,
                        issue="MISSING_REQUIRED",
                        current_value=None,
                        expected_type=_expected_type(prop),
                        suggested_value=None,
                        auto_migratable=False,
                    )
                )
            continue

        value = data[name]
        mismatch = _detect_type_mismatch(example, path, value, prop)
        if mismatch is not None:
            migrations.append(mismatch)

        prop_type = _expected_type(prop)
        if prop_type == "object" and prop.get("properties") and isinstance(value, dict):
            migrations.extend(_detect_object(example, value, prop, path))

        if prop_type == "array" and isinstance(prop.get("items"), dict) and isinstance(value, list):
            items = prop["items"]
            for i, item in enumerate(value):
                item_path = f"{path}[{i}]"
                item_mismatch = _detect_type_mismatch(example, item_path, item, items)
                if item_mismatch is not None:
                    migrations.append(item_mismatch)
                elif isinstance(item, dict):
                    migrations.extend(_detect_object(example, item, items, item_path))

    if schema.get("additionalProperties") is False:
        for name in data:
            if name not in properties:
                migrations.append(
                    MigrationSuggestion(
                        example_id=example.id,
                        example_name=example.name,
                        path=f"{base_path}.{name}",
                        issue="UNKNOWN_FIELD",
                        current_value=data[name],
                        expected_type=None,
                        suggested_value=None,
                        auto_migratable=True,
                    )
                )

    return migrations


def _detect_type_mismatch(
    example: DataExample,
    path: str,
    value: Any,
    prop: Dict[str, Any],
) -> MigrationSuggestion | None:
    expected = _expected_type(prop)
    if expected is None:
        return None
    if _type_matches(value_type(value), expected):
        return None
    if value is None and _allows_null(prop):
        return None

    suggested, auto = _try_convert(value, expected)
    return MigrationSuggestion(
        example_id=example.id,
        example_name=example.name,
        path=path,
        issue="TYPE_MISMATCH",
        current_value=value,
        expected_type=expected,
        suggested_value=suggested,
        auto_migratable=auto,
    )


def _expected_type(prop: Dict[str, Any]) -> Optional[str]:
    value = prop.get("type")
    if isinstance(value, list):
        value = next((t for t in value if t != "null"), None)
    return value


def _allows_null(prop: Dict[str, Any]) -> bool:
    value = prop.get("type")
    return isinstance(value, list) and "null" in value


def value_type(value: Any) -> str:
    """JSON Schema type name of a Python JSON value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "integer" if value.is_integer() else "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "unknown"


def _type_matches(actual: str, expected: str) -> bool:
    return actual == expected or (expected == "number" and actual == "integer")


# =============================================================================
# CONVERSIONS
# =============================================================================

def _try_convert(value: Any, expected: str) -> Tuple[Any, bool]:
    if expected == "string":
        return _to_string(value)
    if expected in ("number", "integer"):
        return _to_number(value, expected)
    if expected == "boolean":
        return _to_boolean(value)
    return None, False


def _to_string(value: Any) -> Tuple[Any, bool]:
    if isinstance(value, str):
        return value, True
    if isinstance(value, bool):
        return "true" if value else "false", True
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value.is_integer():
            return str(int(value)), True
        return str(value), True
    return None, False


def _to_number(value: Any, expected: str) -> Tuple[Any, bool]:
    if isinstance(value, bool):
        return None, False
    if isinstance(value, (int, float)):
        if expected == "integer":
            return int(value), True
        return value, True
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None, False
        if math.isnan(parsed) or math.isinf(parsed):
            return None, False
        if expected == "integer" or parsed.is_integer():
            return int(parsed), True
        return parsed, True
    return None, False


def _to_boolean(value: Any) -> Tuple[Any, bool]:
    if isinstance(value, bool):
        return value, True
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True, True
        if lowered in _FALSE_STRINGS:
            return False, True
        return None, False
    if isinstance(value, (int, float)):
        return value != 0, True
    return None, False


# =============================================================================
# APPLYING
# =============================================================================

def _path_segments(path: str) -> List[str]:
    stripped = re.sub(r"^\$\.?", "", path)
    return _INDEX_SEGMENT_RE.sub(r".\1", stripped).split(".")


def apply_migration(data: Dict[str, Any], migration: MigrationSuggestion) -> Dict[str, Any]:
    """Return a copy of ``data`` with one migration applied.

    Migrations that are not auto-migratable, or have no suggested value,
    leave the data unchanged. ``UNKNOWN_FIELD`` migrations delete the field.
    """
    if not migration.auto_migratable:
        return data
    removing = migration.issue == "UNKNOWN_FIELD"
    if migration.suggested_value is None and not removing:
        return data

    segments = _path_segments(migration.path)
    result = copy.deepcopy(data)

    current: Any = result
    for segment, next_segment in zip(segments, segments[1:]):
        if isinstance(current, list):
            current = current[int(segment)]
            continue
        if segment not in current:
            current[segment] = [] if next_segment.isdigit() else {}
        current = current[segment]

    last = segments[-1]
    if isinstance(current, list):
        index = int(last)
        if removing:
            del current[index]
        else:
            current[index] = migration.suggested_value
    elif removing:
        current.pop(last, None)
    else:
        current[last] = migration.suggested_value
    return result


def apply_all_migrations(data: Dict[str, Any], migrations: List[MigrationSuggestion]) -> Dict[str, Any]:
    """Apply every auto-migratable migration in order."""
    result = data
    for migration in migrations:
        if migration.auto_migratable:
            result = apply_migration(result, migration)
    return result


def migrate_examples(
    examples: List[DataExample],
    migrations: List[MigrationSuggestion],
) -> List[DataExample]:
    """Apply each example's own migrations and return updated copies."""
    migrated = []
    for example in examples:
        own = [m for m in migrations if m.example_id == example.id]
        migrated.append(example.model_copy(update={"data": apply_all_migrations(example.data, own)}, deep=True))
    return migrated


# =============================================================================
# SCHEMA INFERENCE
# =============================================================================

def _infer_type(value: Any) -> str:
    if value is None:
        return "string"
    return value_type(value)


def _infer_property(value: Any) -> Dict[str, Any]:
    inferred = _infer_type(value)
    prop: Dict[str, Any] = {"type": inferred}
    if inferred == "object":
        prop["properties"] = {k: _infer_property(v) for k, v in value.items()}
    elif inferred == "array":
        first = value[0] if value else None
        prop["items"] = _infer_property(first)
    return prop


def generate_schema_from_data(data: Dict[str, Any]) -> JsonSchema:
    """Draft a JSON Schema from one example. All fields are optional.

    Array item types are inferred from the first element; null infers string.
    """
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {name: _infer_property(value) for name, value in data.items()},
        "additionalProperties": True,
    }
