from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BlockType(str, Enum):
    TEXT = "text"
    CONTAINER = "container"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    COLUMNS = "columns"
    TABLE = "table"
    PAGEBREAK = "pagebreak"
    PAGEHEADER = "pageheader"
    PAGEFOOTER = "pagefooter"


# Blocks whose children live directly in a ``children`` list
CHILD_BEARING_TYPES = frozenset(
    {
        BlockType.CONTAINER.value,
        BlockType.CONDITIONAL.value,
        BlockType.LOOP.value,
        BlockType.PAGEHEADER.value,
        BlockType.PAGEFOOTER.value,
    }
)


class CamelModel(BaseModel):
    """Base for every wire model.

    Attributes are snake_case in Python and camelCase on the wire
    (``itemAlias``, ``rowSpan``, ``borderStyle``). Both spellings are
    accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Expression(CamelModel):
    """An opaque expression string handed to the evaluator."""

    raw: str = ""
    language: Optional[str] = None


# =============================================================================
# BLOCKS
# =============================================================================

class TextBlock(CamelModel):
    """Rich text. ``content`` is TipTap JSON; only expression atoms matter here."""

    type: Literal["text"] = "text"
    id: str
    styles: Dict[str, Any] = {}
    content: Optional[Dict[str, Any]] = None


class ContainerBlock(CamelModel):
    type: Literal["container"] = "container"
    id: str
    styles: Dict[str, Any] = {}
    children: List["Block"] = []


class PageHeaderBlock(CamelModel):
    type: Literal["pageheader"] = "pageheader"
    id: str
    styles: Dict[str, Any] = {}
    children: List["Block"] = []


class PageFooterBlock(CamelModel):
    type: Literal["pagefooter"] = "pagefooter"
    id: str
    styles: Dict[str, Any] = {}
    children: List["Block"] = []


class ConditionalBlock(CamelModel):
    """Renders children only when ``condition`` (optionally inverted) is truthy."""

    type: Literal["conditional"] = "conditional"
    id: str
    styles: Dict[str, Any] = {}
    condition: Expression = Field(default_factory=Expression)
    inverse: bool = False
    children: List["Block"] = []


class LoopBlock(CamelModel):
    """Repeats children once per item of the array ``expression`` evaluates to."""

    type: Literal["loop"] = "loop"
    id: str
    styles: Dict[str, Any] = {}
    expression: Expression = Field(default_factory=Expression)
    item_alias: str = "item"
    index_alias: Optional[str] = None
    children: List["Block"] = []


class Column(CamelModel):
    """One column of a columns block. ``size`` is a relative flex weight."""

    id: str
    size: float = 1
    children: List["Block"] = []


class ColumnsBlock(CamelModel):
    type: Literal["columns"] = "columns"
    id: str
    styles: Dict[str, Any] = {}
    gap: int = 16
    columns: List[Column] = []


class CellMerge(CamelModel):
    """Authoritative record of a merged cell region, anchored top-left."""

    row: int
    col: int
    row_span: int = 1
    col_span: int = 1


class TableCell(CamelModel):
    """A grid cell. ``colspan``/``rowspan`` are the rendered shape."""

    id: str
    children: List["Block"] = []
    colspan: int = 1
    rowspan: int = 1
    styles: Dict[str, Any] = {}


class TableRow(CamelModel):
    id: str
    is_header: bool = False
    cells: List[TableCell] = []


BorderStyle = Literal["all", "horizontal", "vertical", "none"]


class TableBlock(CamelModel):
    type: Literal["table"] = "table"
    id: str
    styles: Dict[str, Any] = {}
    rows: List[TableRow] = []
    merges: List[CellMerge] = []
    column_widths: List[float] = []
    border_style: BorderStyle = "all"


class PageBreakBlock(CamelModel):
    type: Literal["pagebreak"] = "pagebreak"
    id: str
    styles: Dict[str, Any] = {}


# Union of all block variants, discriminated by ``type``
Block = Annotated[
    Union[
        TextBlock,
        ContainerBlock,
        ConditionalBlock,
        LoopBlock,
        ColumnsBlock,
        TableBlock,
        PageBreakBlock,
        PageHeaderBlock,
        PageFooterBlock,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# TEMPLATE
# =============================================================================

class PageMargins(CamelModel):
    top: float = 20
    right: float = 20
    bottom: float = 20
    left: float = 20


class PageSettings(CamelModel):
    """Page setup used by PDF output."""

    format: Literal["A4", "Letter", "Custom"] = "A4"
    orientation: Literal["portrait", "landscape"] = "portrait"
    margins: PageMargins = Field(default_factory=PageMargins)


class DataExample(CamelModel):
    """A named sample payload used for previews and schema checks."""

    id: str
    name: str
    data: Dict[str, Any] = {}


class Template(CamelModel):
    """The complete editable document: block tree plus its data contract."""

    id: str
    name: str = ""
    blocks: List[Block] = []
    document_styles: Dict[str, Any] = {}
    page_settings: PageSettings = Field(default_factory=PageSettings)
    data_examples: List[DataExample] = []
    # ``schema`` shadows a BaseModel attribute, hence the alias
    json_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")


# =============================================================================
# EDITING & ANALYSIS RECORDS
# =============================================================================

class CellSelection(CamelModel):
    start_row: int
    start_col: int
    end_row: int
    end_col: int


class SchemaIssue(CamelModel):
    """An expression path that does not resolve against a schema."""

    type: Literal["missing", "removed"]
    path: str
    message: str


class ExpressionCoverage(CamelModel):
    total: int
    valid: int
    missing: int
    coverage: int


MigrationIssueType = Literal["TYPE_MISMATCH", "MISSING_REQUIRED", "UNKNOWN_FIELD"]


class MigrationSuggestion(CamelModel):
    """A proposed fix for one field of one data example.

    ``path`` uses ``$.customer.tags[0]`` notation.
    """

    example_id: str
    example_name: str
    path: str
    issue: MigrationIssueType
    current_value: Any = None
    expected_type: Optional[str] = None
    suggested_value: Any = None
    auto_migratable: bool = False


class MigrationDetectionResult(CamelModel):
    compatible: bool
    migrations: List[MigrationSuggestion] = []


class PreviewOverrides(CamelModel):
    """Per-block preview overrides.

    ``conditionals`` maps a block id to ``"data"``, ``"show"`` or ``"hide"``.
    ``loops`` maps a block id to a forced item count or ``"data"``.
    """

    conditionals: Dict[str, Literal["data", "show", "hide"]] = {}
    loops: Dict[str, Union[int, Literal["data"]]] = {}


class EvaluationResult(CamelModel):
    """Outcome of evaluating one expression."""

    success: bool
    value: Any = None
    error: Optional[str] = None


class ValidationErrorDetail(BaseModel):
    field: str
    message: str


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationErrorDetail] = []


# Resolve forward references for the recursive block models
for _model in (
    ContainerBlock,
    PageHeaderBlock,
    PageFooterBlock,
    ConditionalBlock,
    LoopBlock,
    Column,
    ColumnsBlock,
    TableCell,
    TableRow,
    TableBlock,
    Template,
):
    _model.model_rebuild()
