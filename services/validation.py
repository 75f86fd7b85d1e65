"""Structural validation of a whole template.

Used at the HTTP edge for templates submitted from outside, where nothing
guarantees the tree was built through the mutation engine.

Checks:
1. Block, column, row and cell ids are unique
2. Every block passes its registry validator
3. Every block sits in a container that accepts it
4. Data example ids are unique
5. Cell spans agree with the table's merge records (warnings only)
6. Expression paths resolve against the schema (warnings only)
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models.schemas import Template, ValidationErrorDetail, ValidationResult
from services import block_tree, merge_grid
from services.block_registry import BlockRegistry, get_block_registry
from services.block_tree import ChildContainer
from services.expression_analyzer import extract_expressions
from services.schema_analysis import analyze_schema_impact

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """A single problem found in a template."""
    severity: str  # "error", "warning"
    category: str  # "duplicate_id", "block", "placement", "data_example", "schema"
    path: str
    message: str
    details: Optional[Dict] = None


@dataclass
class ValidationReport:
    template_id: str
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(i.severity == "error" for i in self.issues)

    @property
    def has_warnings(self) -> bool:
        return any(i.severity == "warning" for i in self.issues)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def add_issue(self, severity: str, category: str, path: str, message: str, details: Dict = None):
        self.issues.append(ValidationIssue(severity, category, path, message, details))

    def to_result(self) -> ValidationResult:
        """Errors only, as ``{field, message}`` records."""
        return ValidationResult(
            is_valid=not self.has_errors,
            errors=[ValidationErrorDetail(field=i.path, message=i.message) for i in self.errors],
        )

    def to_dict(self) -> Dict:
        return {
            "template_id": self.template_id,
            "has_errors": self.has_errors,
            "has_warnings": self.has_warnings,
            "issues": [
                {
                    "severity": i.severity,
                    "category": i.category,
                    "path": i.path,
                    "message": i.message,
                    "details": i.details,
                }
                for i in self.issues
            ],
        }


def _collect_ids(template: Template) -> List[str]:
    ids = []
    for block in block_tree.walk(template.blocks):
        ids.append(block.id)
        if block.type == "columns":
            ids.extend(column.id for column in block.columns)
        elif block.type == "table":
            for row in block.rows:
                ids.append(row.id)
                ids.extend(cell.id for cell in row.cells)
    return ids


def validate_ids(template: Template, report: ValidationReport) -> None:
    counts = Counter(_collect_ids(template))
    for node_id, count in counts.items():
        if count > 1:
            report.add_issue(
                "error", "duplicate_id", node_id,
                f"Id '{node_id}' is used {count} times",
                {"count": count},
            )


def validate_blocks(template: Template, report: ValidationReport, registry: BlockRegistry) -> None:
    for block in block_tree.walk(template.blocks):
        for message in registry.validate_block(block):
            report.add_issue("error", "block", block.id, message)


def validate_placement(template: Template, report: ValidationReport, registry: BlockRegistry) -> None:
    def check(container: ChildContainer) -> None:
        for child in container.children:
            error = registry.check_placement(child.type, container, adding=False)
            if error:
                report.add_issue("error", "placement", child.id, error)
            for nested in block_tree.iter_containers(child):
                check(nested)

    check(block_tree.find_container(template.blocks, None))


def validate_data_examples(template: Template, report: ValidationReport) -> None:
    counts = Counter(example.id for example in template.data_examples)
    for example_id, count in counts.items():
        if count > 1:
            report.add_issue(
                "error", "data_example", example_id,
                f"Data example id '{example_id}' is used {count} times",
            )


def validate_spans(template: Template, report: ValidationReport) -> None:
    """Rendering follows the merge records; stale cell spans are flagged."""
    for block in block_tree.walk(template.blocks):
        if block.type != "table" or not block.merges:
            continue
        for r, row in enumerate(block.rows):
            for c, cell in enumerate(row.cells):
                merge = merge_grid.find_merge_at(r, c, block.merges)
                expected = (1, 1)
                if merge is not None and (merge.row, merge.col) == (r, c):
                    expected = (merge.col_span, merge.row_span)
                if (cell.colspan, cell.rowspan) != expected:
                    report.add_issue(
                        "warning", "spans", cell.id,
                        f"Cell {cell.id} spans {cell.colspan}x{cell.rowspan}, merges say {expected[0]}x{expected[1]}",
                        {"table": block.id, "row": r, "col": c},
                    )


def validate_expressions(template: Template, report: ValidationReport) -> None:
    if not template.json_schema:
        return
    for issue in analyze_schema_impact(template.json_schema, sorted(extract_expressions(template.blocks))):
        report.add_issue("warning", "schema", issue.path, issue.message)


def validate_template(template: Template, registry: BlockRegistry | None = None) -> ValidationReport:
    """Run every check and collect the issues into one report."""
    registry = registry or get_block_registry()
    report = ValidationReport(template_id=template.id)

    validate_ids(template, report)
    validate_blocks(template, report, registry)
    validate_placement(template, report, registry)
    validate_data_examples(template, report)
    validate_spans(template, report)
    validate_expressions(template, report)

    if report.has_errors:
        logger.info(f"[VALIDATE] Template {template.id}: {len(report.errors)} error(s)")
    return report
