"""Block definitions: default factories, validators and placement constraints.

Every block type declares its own rules. The mutation engine and the
drag/drop service consult the registry instead of hard-coding types.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from models.schemas import (
    Block,
    BlockType,
    Column,
    ColumnsBlock,
    ConditionalBlock,
    ContainerBlock,
    Expression,
    LoopBlock,
    PageBreakBlock,
    PageFooterBlock,
    PageHeaderBlock,
    TableBlock,
    TableCell,
    TableRow,
    TextBlock,
)
from services.block_tree import ChildContainer
from services.engine_config import get_engine_settings

logger = logging.getLogger(__name__)


IdFactory = Callable[[], str]

# Pseudo parent type used in ``allowed_parent_types`` for top-level placement
ROOT = "root"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def generate_id() -> str:
    return f"block-{uuid.uuid4().hex[:12]}"


@dataclass
class BlockConstraints:
    """Structure and placement rules for one block type.

    ``allowed_child_types`` of None accepts any child, ``[]`` accepts none.
    ``allowed_parent_types`` of None is unrestricted; ``"root"`` names the
    top level, ``"columns"``/``"table"`` name column and cell containers.
    """
    can_have_children: bool
    allowed_child_types: Optional[List[str]] = None
    allowed_parent_types: Optional[List[str]] = None
    can_be_dragged: bool = True
    max_children: Optional[int] = None

    def accepts_child(self, child_type: str) -> bool:
        if not self.can_have_children:
            return False
        return self.allowed_child_types is None or child_type in self.allowed_child_types

    def accepts_parent(self, parent_type: str) -> bool:
        return self.allowed_parent_types is None or parent_type in self.allowed_parent_types


@dataclass
class BlockDefinition:
    type: str
    label: str
    category: str
    create: Callable[[str, IdFactory], Block]
    constraints: BlockConstraints
    validate: Callable[[Block], List[str]] = field(default=lambda block: [])


# =============================================================================
# FACTORIES
# =============================================================================

def create_column(new_id: IdFactory) -> Column:
    return Column(id=new_id(), size=1, children=[])


def create_cell(new_id: IdFactory) -> TableCell:
    return TableCell(id=new_id(), children=[])


def create_row(new_id: IdFactory, cell_count: int, is_header: bool = False) -> TableRow:
    return TableRow(
        id=new_id(),
        is_header=is_header,
        cells=[create_cell(new_id) for _ in range(cell_count)],
    )


def _create_table(block_id: str, new_id: IdFactory) -> TableBlock:
    settings = get_engine_settings()
    rows = [
        create_row(new_id, settings.default_table_columns, is_header=(i == 0))
        for i in range(settings.default_table_rows)
    ]
    return TableBlock(id=block_id, rows=rows, merges=[], border_style="all")


# =============================================================================
# VALIDATORS
# =============================================================================

def _validate_loop(block: LoopBlock) -> List[str]:
    errors = []
    if not block.item_alias or not _IDENTIFIER_RE.match(block.item_alias):
        errors.append(f"Loop block {block.id} must have an identifier itemAlias")
    if block.index_alias is not None and not _IDENTIFIER_RE.match(block.index_alias):
        errors.append(f"Loop block {block.id} has an invalid indexAlias '{block.index_alias}'")
    return errors


def _validate_columns(block: ColumnsBlock) -> List[str]:
    errors = []
    max_columns = get_engine_settings().max_columns
    if len(block.columns) < 1:
        errors.append(f"Columns block {block.id} must have at least 1 column")
    if len(block.columns) > max_columns:
        errors.append(f"Columns block {block.id} can have at most {max_columns} columns")
    for column in block.columns:
        if column.size <= 0:
            errors.append(f"Column {column.id} must have a positive size")
    return errors


def _validate_table(block: TableBlock) -> List[str]:
    errors = []
    if not block.rows:
        errors.append(f"Table block {block.id} must have at least one row")
        return errors

    width = len(block.rows[0].cells)
    # span-described rows may differ in length; merge records need the full grid
    for row in block.rows if block.merges else []:
        if len(row.cells) != width:
            errors.append(
                f"Table block {block.id} row {row.id} has {len(row.cells)} cells, expected {width}"
            )

    height = len(block.rows)
    seen: Dict[tuple, int] = {}
    for idx, merge in enumerate(block.merges):
        if merge.row_span < 1 or merge.col_span < 1 or (merge.row_span == 1 and merge.col_span == 1):
            errors.append(f"Table block {block.id} merge at ({merge.row}, {merge.col}) is not a real merge")
            continue
        if merge.row < 0 or merge.col < 0 or merge.row + merge.row_span > height or merge.col + merge.col_span > width:
            errors.append(f"Table block {block.id} merge at ({merge.row}, {merge.col}) is out of bounds")
            continue
        for r in range(merge.row, merge.row + merge.row_span):
            for c in range(merge.col, merge.col + merge.col_span):
                if (r, c) in seen:
                    errors.append(
                        f"Table block {block.id} merges {seen[(r, c)]} and {idx} overlap at ({r}, {c})"
                    )
                seen[(r, c)] = idx
    return errors


# =============================================================================
# DEFAULT DEFINITIONS
# =============================================================================

def _any_children() -> BlockConstraints:
    return BlockConstraints(can_have_children=True)


def _root_only(can_have_children: bool) -> BlockConstraints:
    return BlockConstraints(
        can_have_children=can_have_children,
        allowed_child_types=None if can_have_children else [],
        allowed_parent_types=[ROOT],
    )


DEFAULT_DEFINITIONS: List[BlockDefinition] = [
    BlockDefinition(
        type=BlockType.TEXT.value,
        label="Text",
        category="Content",
        create=lambda block_id, new_id: TextBlock(id=block_id, content=None),
        constraints=BlockConstraints(can_have_children=False, allowed_child_types=[]),
    ),
    BlockDefinition(
        type=BlockType.CONTAINER.value,
        label="Container",
        category="Layout",
        create=lambda block_id, new_id: ContainerBlock(id=block_id),
        constraints=_any_children(),
    ),
    BlockDefinition(
        type=BlockType.CONDITIONAL.value,
        label="Conditional",
        category="Logic",
        create=lambda block_id, new_id: ConditionalBlock(
            id=block_id, condition=Expression(raw=""), inverse=False
        ),
        constraints=_any_children(),
    ),
    BlockDefinition(
        type=BlockType.LOOP.value,
        label="Loop",
        category="Logic",
        create=lambda block_id, new_id: LoopBlock(
            id=block_id, expression=Expression(raw=""), item_alias="item"
        ),
        constraints=_any_children(),
        validate=_validate_loop,
    ),
    BlockDefinition(
        type=BlockType.COLUMNS.value,
        label="Columns",
        category="Layout",
        create=lambda block_id, new_id: ColumnsBlock(
            id=block_id, gap=16, columns=[create_column(new_id), create_column(new_id)]
        ),
        # Children live in the columns, not on the block itself
        constraints=BlockConstraints(can_have_children=False, allowed_child_types=[]),
        validate=_validate_columns,
    ),
    BlockDefinition(
        type=BlockType.TABLE.value,
        label="Table",
        category="Layout",
        create=_create_table,
        constraints=BlockConstraints(can_have_children=False, allowed_child_types=[]),
        validate=_validate_table,
    ),
    BlockDefinition(
        type=BlockType.PAGEBREAK.value,
        label="Page Break",
        category="Layout",
        create=lambda block_id, new_id: PageBreakBlock(id=block_id),
        constraints=_root_only(can_have_children=False),
    ),
    BlockDefinition(
        type=BlockType.PAGEHEADER.value,
        label="Page Header",
        category="Layout",
        create=lambda block_id, new_id: PageHeaderBlock(id=block_id),
        constraints=_root_only(can_have_children=True),
    ),
    BlockDefinition(
        type=BlockType.PAGEFOOTER.value,
        label="Page Footer",
        category="Layout",
        create=lambda block_id, new_id: PageFooterBlock(id=block_id),
        constraints=_root_only(can_have_children=True),
    ),
]


class BlockRegistry:
    """Lookup table of block definitions keyed by type."""

    def __init__(self, definitions: List[BlockDefinition] | None = None):
        self._definitions: Dict[str, BlockDefinition] = {}
        for definition in definitions if definitions is not None else DEFAULT_DEFINITIONS:
            self.register(definition)

    def register(self, definition: BlockDefinition) -> None:
        if definition.type in self._definitions:
            logger.info(f"[REGISTRY] Replacing definition for block type '{definition.type}'")
        self._definitions[definition.type] = definition

    def get_definition(self, block_type: str) -> BlockDefinition | None:
        return self._definitions.get(str(getattr(block_type, "value", block_type)))

    def types(self) -> List[str]:
        return list(self._definitions)

    def validate_block(self, block: Block) -> List[str]:
        definition = self.get_definition(block.type)
        if definition is None:
            return [f"Unknown block type: {block.type}"]
        return definition.validate(block)

    def check_placement(self, child_type: str, container: ChildContainer, adding: bool = True) -> str | None:
        """Return why ``child_type`` cannot live in ``container``, or None if it can.

        With ``adding`` the child is not in the container yet, so a full
        container rejects it. Without it the container is checked as it stands.
        """
        child_def = self.get_definition(child_type)
        if child_def is None:
            return f"Unknown block type: {child_type}"

        if container.owner is None:
            if not child_def.constraints.accepts_parent(ROOT):
                return f"Block type {child_type} cannot be placed at root level"
            return None

        if container.is_slot:
            if not child_def.constraints.accepts_parent(container.parent_type):
                where = "a column" if container.parent_type == BlockType.COLUMNS else "a table cell"
                return f"Block type {child_type} cannot be nested in {where}"
            return None

        parent_type = container.owner.type
        parent_def = self.get_definition(parent_type)
        if parent_def is None:
            return f"Unknown parent block type: {parent_type}"
        if not parent_def.constraints.accepts_child(child_type):
            return f"Block type {parent_type} does not accept {child_type} children"
        if not child_def.constraints.accepts_parent(parent_type):
            return f"Block type {child_type} cannot be nested in {parent_type}"
        max_children = parent_def.constraints.max_children
        count = len(container.children) + (1 if adding else 0)
        if max_children is not None and count > max_children:
            return f"Block type {parent_type} accepts at most {max_children} children"
        return None


# Singleton instance
_registry: BlockRegistry | None = None


def get_block_registry() -> BlockRegistry:
    """Get or create the default block registry singleton."""
    global _registry
    if _registry is None:
        _registry = BlockRegistry()
    return _registry
