"""Schema impact analysis.

Compares the expression paths a template uses against the field paths a
JSON Schema declares.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from models.schemas import ExpressionCoverage, SchemaIssue
from services.expression_analyzer import path_matches_schema

logger = logging.getLogger(__name__)


JsonSchema = Dict[str, Any]


def _schema_type(prop: Dict[str, Any]) -> Optional[str]:
    value = prop.get("type")
    if isinstance(value, list):
        # ["string", "null"] style unions: first non-null type wins
        value = next((t for t in value if t != "null"), None)
    return value


def get_schema_field_paths(schema: Optional[JsonSchema]) -> Set[str]:
    """Every field path a JSON Schema declares.

    Arrays contribute both ``name`` and ``name[]``; fields of array items
    live under ``name[]`` (``items[].price``).
    """
    paths: Set[str] = set()
    if not schema or not isinstance(schema, dict):
        return paths

    def traverse(properties: Dict[str, Any], prefix: str) -> None:
        for name, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            path = f"{prefix}.{name}" if prefix else name
            paths.add(path)

            prop_type = _schema_type(prop)
            if prop_type == "object" and prop.get("properties"):
                traverse(prop["properties"], path)
            elif prop_type == "array":
                array_path = f"{path}[]"
                paths.add(array_path)
                items = prop.get("items") or {}
                if isinstance(items, dict) and items.get("properties"):
                    traverse(items["properties"], array_path)

    traverse(schema.get("properties") or {}, "")
    return paths


def _ordered(expressions: Iterable[str]) -> List[str]:
    if isinstance(expressions, (list, tuple)):
        return list(expressions)
    return sorted(expressions)


def analyze_schema_impact(schema: Optional[JsonSchema], expressions: Iterable[str]) -> List[SchemaIssue]:
    """One ``missing`` issue per expression path the schema does not declare."""
    schema_paths = get_schema_field_paths(schema)
    issues = []
    for path in _ordered(expressions):
        if not path_matches_schema(path, schema_paths):
            issues.append(
                SchemaIssue(
                    type="missing",
                    path=path,
                    message=f"Expression path '{path}' is not defined in the schema",
                )
            )
    if issues:
        logger.info(f"[SCHEMA] {len(issues)} expression path(s) missing from schema")
    return issues


def detect_removed_paths(
    old_schema: Optional[JsonSchema],
    new_schema: Optional[JsonSchema],
    expressions: Iterable[str],
) -> List[SchemaIssue]:
    """One ``removed`` issue per expression that used a path the new schema dropped."""
    removed = get_schema_field_paths(old_schema) - get_schema_field_paths(new_schema)
    if not removed:
        return []

    issues = []
    for path in _ordered(expressions):
        if path_matches_schema(path, removed):
            issues.append(
                SchemaIssue(
                    type="removed",
                    path=path,
                    message=f"Expression path '{path}' uses a field removed from the schema",
                )
            )
    return issues


def get_expression_coverage(schema: Optional[JsonSchema], expressions: Iterable[str]) -> ExpressionCoverage:
    """How many expression paths resolve against the schema, as a percentage."""
    schema_paths = get_schema_field_paths(schema)
    paths = list(expressions)
    total = len(paths)
    valid = sum(1 for p in paths if path_matches_schema(p, schema_paths))
    # halves round up
    coverage = 100 if total == 0 else int(valid / total * 100 + 0.5)
    return ExpressionCoverage(total=total, valid=valid, missing=total - valid, coverage=coverage)
