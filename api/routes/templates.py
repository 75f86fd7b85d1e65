from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import Field

from models.schemas import (
    CamelModel,
    DataExample,
    ExpressionCoverage,
    MigrationSuggestion,
    PreviewOverrides,
    SchemaIssue,
    Template,
    ValidationErrorDetail,
)
from services.evaluators import DirectEvaluator
from services.expression_analyzer import extract_expressions, get_root_paths
from services.schema_analysis import analyze_schema_impact, detect_removed_paths, get_expression_coverage
from services.schema_migration import detect_migrations, generate_schema_from_data, migrate_examples
from services.template_renderer import render_template_with_diagnostics
from services.validation import validate_template

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/templates", tags=["templates"])


class RenderRequest(CamelModel):
    template: Template
    data: Optional[Dict[str, Any]] = None
    # Falls back to this data example (or the first one) when ``data`` is omitted
    data_example_id: Optional[str] = None
    overrides: PreviewOverrides = Field(default_factory=PreviewOverrides)


class RenderDiagnosticModel(CamelModel):
    block_id: str
    expression: str
    message: str


class RenderResponse(CamelModel):
    html: str
    diagnostics: List[RenderDiagnosticModel] = []


class ValidationIssueModel(CamelModel):
    category: str
    path: str
    message: str


class ValidationReportResponse(CamelModel):
    is_valid: bool
    errors: List[ValidationIssueModel] = []
    warnings: List[ValidationIssueModel] = []


class ExpressionsResponse(CamelModel):
    expressions: List[str]
    roots: List[str]
    coverage: Optional[ExpressionCoverage] = None


class SchemaImpactRequest(CamelModel):
    template: Template
    # Candidate schema; the template's own schema is the baseline
    json_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")


class SchemaImpactResponse(CamelModel):
    issues: List[SchemaIssue]
    removed: List[SchemaIssue]
    coverage: ExpressionCoverage


class MigrationsRequest(CamelModel):
    json_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    data_examples: List[DataExample] = []
    apply: bool = False


class MigrationsResponse(CamelModel):
    compatible: bool
    migrations: List[MigrationSuggestion]
    data_examples: Optional[List[DataExample]] = None


class InferSchemaRequest(CamelModel):
    data: Dict[str, Any]


def _ensure_valid(template: Template) -> None:
    report = validate_template(template)
    if report.has_errors:
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Validation failed",
                "errors": [
                    ValidationErrorDetail(field=i.path, message=i.message).model_dump() for i in report.errors
                ],
            },
        )


def _render_data(payload: RenderRequest) -> Dict[str, Any]:
    if payload.data is not None:
        return payload.data
    examples = payload.template.data_examples
    if payload.data_example_id is not None:
        for example in examples:
            if example.id == payload.data_example_id:
                return example.data
        raise HTTPException(status_code=404, detail="Data example not found")
    return examples[0].data if examples else {}


@router.post("/render", response_model=RenderResponse)
async def render(payload: RenderRequest) -> RenderResponse:
    """Render a template against data and return the HTML with failed expressions."""
    _ensure_valid(payload.template)
    data = _render_data(payload)

    logger.info(f"[RENDER] Rendering template {payload.template.id}")
    output = await render_template_with_diagnostics(
        payload.template.blocks,
        data,
        payload.overrides,
        DirectEvaluator(),
        payload.template.document_styles,
    )
    return RenderResponse(
        html=output.html,
        diagnostics=[
            RenderDiagnosticModel(block_id=d.block_id, expression=d.expression, message=d.message)
            for d in output.diagnostics
        ],
    )


@router.post("/render/html", response_class=HTMLResponse)
async def render_html(payload: RenderRequest) -> HTMLResponse:
    """Render a template and return a standalone HTML page for in-app viewing."""
    response = await render(payload)
    return HTMLResponse(content=f"<html><body>{response.html}</body></html>")


@router.post("/validate", response_model=ValidationReportResponse)
async def validate(template: Template) -> ValidationReportResponse:
    report = validate_template(template)
    logger.info(
        f"[VALIDATE] Template {template.id}: errors={report.has_errors}, warnings={report.has_warnings}"
    )
    return ValidationReportResponse(
        is_valid=not report.has_errors,
        errors=[ValidationIssueModel(category=i.category, path=i.path, message=i.message) for i in report.errors],
        warnings=[
            ValidationIssueModel(category=i.category, path=i.path, message=i.message) for i in report.warnings
        ],
    )


@router.post("/expressions", response_model=ExpressionsResponse)
async def expressions(template: Template) -> ExpressionsResponse:
    """List the data paths a template reads."""
    paths = extract_expressions(template.blocks)
    coverage = None
    if template.json_schema:
        coverage = get_expression_coverage(template.json_schema, sorted(paths))
    return ExpressionsResponse(
        expressions=sorted(paths),
        roots=sorted(get_root_paths(paths)),
        coverage=coverage,
    )


@router.post("/schema-impact", response_model=SchemaImpactResponse)
async def schema_impact(payload: SchemaImpactRequest) -> SchemaImpactResponse:
    """What a candidate schema would break in the template."""
    paths = sorted(extract_expressions(payload.template.blocks))
    return SchemaImpactResponse(
        issues=analyze_schema_impact(payload.json_schema, paths),
        removed=detect_removed_paths(payload.template.json_schema, payload.json_schema, paths),
        coverage=get_expression_coverage(payload.json_schema, paths),
    )


@router.post("/migrations", response_model=MigrationsResponse)
async def migrations(payload: MigrationsRequest) -> MigrationsResponse:
    """Detect (and optionally apply) the migrations examples need to fit a schema."""
    detection = detect_migrations(payload.json_schema, payload.data_examples)
    migrated = None
    if payload.apply:
        migrated = migrate_examples(payload.data_examples, detection.migrations)
    return MigrationsResponse(
        compatible=detection.compatible,
        migrations=detection.migrations,
        data_examples=migrated,
    )


@router.post("/schema/infer")
async def infer_schema(payload: InferSchemaRequest) -> Dict[str, Any]:
    """Draft a JSON Schema from a sample payload."""
    return generate_schema_from_data(payload.data)
