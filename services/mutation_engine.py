"""Mutation engine: the only writer of the template tree.

Every operation is synchronous and atomic. It edits a deep copy of the
current template and commits the copy to the store only when the whole
edit succeeded. Rejected operations change nothing, record no history and
return None/False.

Flow:
    caller → MutationEngine → (block_tree, merge_grid, registry checks)
           → CommandHistory (before/after snapshots)
           → TemplateStore.commit_template → subscribers
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from models.schemas import (
    Block,
    BlockType,
    CellMerge,
    CellSelection,
    Column,
    ColumnsBlock,
    PageSettings,
    TableBlock,
    Template,
)
from services import block_tree, merge_grid
from services.block_registry import (
    ROOT,
    BlockRegistry,
    create_cell,
    create_column,
    create_row,
    generate_id,
    get_block_registry,
)
from services.block_tree import ChildContainer
from services.drag_drop import DragDropService, DropPosition
from services.engine_config import get_engine_settings
from services.history import CommandHistory, HistoryEntry
from services.template_store import TemplateStore

logger = logging.getLogger(__name__)


# Fields ``update_block`` never touches
_PROTECTED_FIELDS = frozenset({"id", "type", "children"})


class MutationEngine:
    """Structural editing of one template held in a ``TemplateStore``.

    Usage:
        store = TemplateStore(template)
        engine = MutationEngine(store)
        block = engine.add_block("container")
        engine.add_block("text", parent_id=block.id)
        engine.undo()
    """

    def __init__(
        self,
        store: TemplateStore,
        registry: BlockRegistry | None = None,
        history_limit: int | None = None,
        id_factory: Callable[[], str] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        settings = get_engine_settings()
        self._store = store
        self.registry = registry or get_block_registry()
        self._history = CommandHistory(history_limit or settings.history_limit)
        self._new_id = id_factory or generate_id
        self._on_error = on_error
        self._batch_depth = 0
        self.drag_drop = DragDropService(self)

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def template(self) -> Template:
        return self._store.get_template()

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._history.can_redo

    @property
    def selected_block_id(self) -> str | None:
        return self._store.selected_block_id

    def find_block(self, block_id: str) -> Block | None:
        return block_tree.find_block(self.template.blocks, block_id)

    def check_placement(self, child_type: str, container: ChildContainer) -> str | None:
        """Return why ``child_type`` cannot be added to ``container``, or None if it can."""
        return self.registry.check_placement(child_type, container)

    def can_drop(self, dragged_id: str, target_id: Optional[str], position: DropPosition = "inside") -> bool:
        return self.drag_drop.can_drop(dragged_id, target_id, position)

    # =========================================================================
    # Internals
    # =========================================================================

    def _begin(self) -> Tuple[Template, Template]:
        before = self._store.get_template()
        return before, before.model_copy(deep=True)

    def _reject(self, message: str) -> None:
        logger.debug(f"[MUTATION] Rejected: {message}")
        if self._on_error is not None:
            self._on_error(message)

    def _commit(self, label: str, before: Template, after: Template) -> None:
        if self._batch_depth == 0:
            self._history.push(HistoryEntry(label=label, before=before, after=after.model_copy(deep=True)))
        logger.info(f"[MUTATION] {label}")
        self._store.commit_template(after)

    def _clear_stale_selection(self) -> None:
        selected = self._store.selected_block_id
        if selected is not None and self.find_block(selected) is None:
            self._store.select_block(None)

    # =========================================================================
    # Block operations
    # =========================================================================

    def add_block(self, block_type: str, parent_id: str | None = None, index: int | None = None) -> Block | None:
        """Create a default block of ``block_type`` under ``parent_id`` (root if None).

        ``parent_id`` may name a block, a column or a table cell. Appends when
        ``index`` is omitted. Returns the new block, or None if rejected.
        """
        definition = self.registry.get_definition(block_type)
        if definition is None:
            self._reject(f"Unknown block type: {block_type}")
            return None

        before, draft = self._begin()
        container = block_tree.find_container(draft.blocks, parent_id)
        if container is None:
            self._reject(f"Parent not found or cannot hold children: {parent_id}")
            return None

        error = self.check_placement(definition.type, container)
        if error:
            self._reject(error)
            return None

        block = definition.create(self._new_id(), self._new_id)
        block_tree.insert_block(draft.blocks, block, parent_id, index)
        self._commit(f"add {definition.type} {block.id}", before, draft)
        return block.model_copy(deep=True)

    def move_block(self, block_id: str, target_parent_id: str | None, target_index: int) -> bool:
        """Move a block to ``target_index`` of ``target_parent_id``.

        ``target_index`` is a position in the target list after the block has
        been taken out of its old place. Rejects moves into the block's own
        subtree, moves the target does not accept, and moves that would leave
        the block where it already is.
        """
        before, draft = self._begin()
        source = block_tree.locate(draft.blocks, block_id)
        if source is None:
            self._reject(f"Block not found: {block_id}")
            return False
        source_container, old_index = source

        if target_parent_id is not None and block_tree.is_self_or_descendant(draft.blocks, block_id, target_parent_id):
            self._reject(f"Cannot move {block_id} into itself or its descendant {target_parent_id}")
            return False

        target = block_tree.find_container(draft.blocks, target_parent_id)
        if target is None:
            self._reject(f"Target not found or cannot hold children: {target_parent_id}")
            return False

        block = source_container.children[old_index]
        error = self.registry.check_placement(block.type, target, adding=source_container.id != target.id)
        if error:
            self._reject(error)
            return False

        if source_container.id == target.id and old_index == target_index:
            logger.debug(f"[MUTATION] Move of {block_id} is a no-op")
            return False

        block_tree.remove_block(draft.blocks, block_id)
        target_len = block_tree.child_count(draft.blocks, target_parent_id)
        index = max(0, min(target_index, target_len))
        if source_container.id == target.id and index == old_index:
            logger.debug(f"[MUTATION] Move of {block_id} is a no-op")
            return False

        block_tree.insert_block(draft.blocks, block, target_parent_id, index)
        self._commit(f"move {block_id} to {target_parent_id or ROOT}[{index}]", before, draft)
        return True

    def delete_block(self, block_id: str) -> bool:
        """Remove ``block_id`` and its whole subtree."""
        before, draft = self._begin()
        removed = block_tree.remove_block(draft.blocks, block_id)
        if removed is None:
            self._reject(f"Block not found: {block_id}")
            return False

        self._commit(f"delete {block_id}", before, draft)
        if self._store.selected_block_id in block_tree.subtree_ids(removed):
            self._store.select_block(None)
        return True

    def update_block(self, block_id: str, partial: Dict[str, Any]) -> bool:
        """Shallow-merge ``partial`` into the block's own fields.

        Keys may be snake_case or camelCase. ``id``, ``type`` and ``children``
        are ignored. The result must still validate.
        """
        before, draft = self._begin()
        block = block_tree.find_block(draft.blocks, block_id)
        if block is None:
            self._reject(f"Block not found: {block_id}")
            return False

        model_cls = type(block)
        data = block.model_dump()
        changed = False
        for key, value in partial.items():
            name = _field_name(model_cls, key)
            if name is None or name in _PROTECTED_FIELDS:
                logger.debug(f"[MUTATION] Ignoring field '{key}' on {block.type} block {block_id}")
                continue
            data[name] = value
            changed = True
        if not changed:
            return False

        try:
            updated = model_cls.model_validate(data)
        except ValidationError as e:
            self._reject(f"Invalid update for {block_id}: {e.errors()[0]['msg']}")
            return False

        if updated.type == BlockType.TABLE:
            _to_full_grid(updated, self._new_id)
            _sync_cell_spans(updated)
        errors = self.registry.validate_block(updated)
        if errors:
            self._reject(errors[0])
            return False

        block_tree.replace_block(draft.blocks, block_id, updated)
        self._commit(f"update {block_id} ({', '.join(partial)})", before, draft)
        return True

    def select_block(self, block_id: str | None) -> bool:
        """Change the selection. Selection is not part of undo history."""
        if block_id is not None and self.find_block(block_id) is None:
            return False
        self._store.select_block(block_id)
        return True

    # =========================================================================
    # Document-level settings
    # =========================================================================

    def update_document_styles(self, styles: Dict[str, Any]) -> bool:
        """Merge ``styles`` into the document styles. A None value removes a key."""
        before, draft = self._begin()
        merged = {**draft.document_styles, **styles}
        draft.document_styles = {k: v for k, v in merged.items() if v is not None}
        if draft.document_styles == before.document_styles:
            return False
        self._commit("update document styles", before, draft)
        return True

    def update_page_settings(self, partial: Dict[str, Any]) -> bool:
        before, draft = self._begin()
        data = draft.page_settings.model_dump()
        data.update({_field_name(PageSettings, k) or k: v for k, v in partial.items()})
        try:
            draft.page_settings = PageSettings.model_validate(data)
        except ValidationError as e:
            self._reject(f"Invalid page settings: {e.errors()[0]['msg']}")
            return False
        self._commit("update page settings", before, draft)
        return True

    # =========================================================================
    # Columns
    # =========================================================================

    def _edit_block(
        self,
        block_id: str,
        block_type: BlockType,
        label: str,
        apply: Callable[[Any], Optional[str]],
    ) -> bool:
        """Run ``apply`` on a draft copy of a block of ``block_type`` and commit.

        ``apply`` returns an error message to reject the edit.
        """
        before, draft = self._begin()
        block = block_tree.find_block(draft.blocks, block_id)
        if block is None or block.type != block_type:
            self._reject(f"Target is not a {block_type.value} block: {block_id}")
            return False

        if block.type == BlockType.TABLE:
            _to_full_grid(block, self._new_id)
        error = apply(block)
        if error:
            self._reject(error)
            return False

        if block.type == BlockType.TABLE:
            _sync_cell_spans(block)
        errors = self.registry.validate_block(block)
        if errors:
            self._reject(errors[0])
            return False

        self._commit(f"{label} on {block_id}", before, draft)
        return True

    def add_column(self, columns_block_id: str, size: float = 1) -> Column | None:
        new_column = create_column(self._new_id)
        new_column.size = size
        max_columns = get_engine_settings().max_columns

        def apply(block: ColumnsBlock) -> Optional[str]:
            if len(block.columns) >= max_columns:
                return f"Maximum {max_columns} columns allowed"
            block.columns.append(new_column)
            return None

        if not self._edit_block(columns_block_id, BlockType.COLUMNS, "add column", apply):
            return None
        return new_column.model_copy(deep=True)

    def remove_column(self, columns_block_id: str, column_id: str) -> bool:
        def apply(block: ColumnsBlock) -> Optional[str]:
            if len(block.columns) <= 1:
                return "Cannot remove last column"
            remaining = [c for c in block.columns if c.id != column_id]
            if len(remaining) == len(block.columns):
                return f"Column not found: {column_id}"
            block.columns = remaining
            return None

        ok = self._edit_block(columns_block_id, BlockType.COLUMNS, "remove column", apply)
        if ok:
            self._clear_stale_selection()
        return ok

    # =========================================================================
    # Tables
    # =========================================================================

    def add_table_row(self, table_id: str, position: int | None = None, is_header: bool = False) -> bool:
        """Insert an empty row at ``position`` (appended when None) and shift merges."""
        def apply(table: TableBlock) -> Optional[str]:
            pos = len(table.rows) if position is None else position
            if pos < 0 or pos > len(table.rows):
                return f"Invalid row position {pos}"
            table.rows.insert(pos, create_row(self._new_id, _table_width(table), is_header))
            table.merges = merge_grid.shift_merges_for_row_insert(table.merges, pos)
            return None

        return self._edit_block(table_id, BlockType.TABLE, "add row", apply)

    def remove_table_row(self, table_id: str, position: int) -> bool:
        """Remove the row at ``position`` with its cell content and shift merges."""
        def apply(table: TableBlock) -> Optional[str]:
            if len(table.rows) <= 1:
                return "Cannot remove the last row"
            if position < 0 or position >= len(table.rows):
                return f"Invalid row position {position}"
            # A merge anchored on the removed row keeps its content in the next row
            for m in table.merges:
                if m.row == position and m.row_span > 1:
                    anchor = table.rows[position].cells[m.col]
                    heir = table.rows[position + 1].cells[m.col]
                    heir.children[:0] = anchor.children
            del table.rows[position]
            table.merges = merge_grid.shift_merges_for_row_remove(table.merges, position)
            return None

        ok = self._edit_block(table_id, BlockType.TABLE, "remove row", apply)
        if ok:
            self._clear_stale_selection()
        return ok

    def add_table_column(self, table_id: str, position: int | None = None, width: float | None = None) -> bool:
        """Insert an empty column at ``position`` (appended when None) and shift merges."""
        def apply(table: TableBlock) -> Optional[str]:
            cols = _table_width(table)
            pos = cols if position is None else position
            if pos < 0 or pos > cols:
                return f"Invalid column position {pos}"
            for row in table.rows:
                row.cells.insert(pos, create_cell(self._new_id))
            if table.column_widths:
                table.column_widths.insert(pos, width if width is not None else 1)
            table.merges = merge_grid.shift_merges_for_col_insert(table.merges, pos)
            return None

        return self._edit_block(table_id, BlockType.TABLE, "add column", apply)

    def remove_table_column(self, table_id: str, position: int) -> bool:
        def apply(table: TableBlock) -> Optional[str]:
            cols = _table_width(table)
            if cols <= 1:
                return "Cannot remove the last column"
            if position < 0 or position >= cols:
                return f"Invalid column position {position}"
            for m in table.merges:
                if m.col == position and m.col_span > 1:
                    anchor = table.rows[m.row].cells[position]
                    heir = table.rows[m.row].cells[position + 1]
                    heir.children[:0] = anchor.children
            for row in table.rows:
                del row.cells[position]
            if position < len(table.column_widths):
                del table.column_widths[position]
            table.merges = merge_grid.shift_merges_for_col_remove(table.merges, position)
            return None

        ok = self._edit_block(table_id, BlockType.TABLE, "remove column", apply)
        if ok:
            self._clear_stale_selection()
        return ok

    def merge_cells(self, table_id: str, selection: CellSelection) -> bool:
        """Merge the selected rectangle into one cell anchored at its top-left.

        Merges fully inside the selection are absorbed. Content of covered
        cells moves into the anchor cell, in row-major order.
        """
        sel = merge_grid.normalize_selection(selection)

        def apply(table: TableBlock) -> Optional[str]:
            if sel.start_row < 0 or sel.start_col < 0:
                return "Selection is out of bounds"
            if sel.end_row >= len(table.rows) or sel.end_col >= _table_width(table):
                return "Selection is out of bounds"
            if not merge_grid.can_merge(sel.start_row, sel.start_col, sel.end_row, sel.end_col, table.merges):
                return "Selection cannot be merged"

            absorbed = {id(m) for m in merge_grid.merges_inside(sel, table.merges)}
            table.merges = [m for m in table.merges if id(m) not in absorbed]

            anchor = table.rows[sel.start_row].cells[sel.start_col]
            for r in range(sel.start_row, sel.end_row + 1):
                for c in range(sel.start_col, sel.end_col + 1):
                    if r == sel.start_row and c == sel.start_col:
                        continue
                    covered = table.rows[r].cells[c]
                    anchor.children.extend(covered.children)
                    covered.children = []

            table.merges.append(
                CellMerge(
                    row=sel.start_row,
                    col=sel.start_col,
                    row_span=sel.end_row - sel.start_row + 1,
                    col_span=sel.end_col - sel.start_col + 1,
                )
            )
            return None

        return self._edit_block(table_id, BlockType.TABLE, "merge cells", apply)

    def unmerge_cells(self, table_id: str, row: int, col: int) -> bool:
        """Remove the merge anchored exactly at ``(row, col)``."""
        def apply(table: TableBlock) -> Optional[str]:
            remaining = [m for m in table.merges if not (m.row == row and m.col == col)]
            if len(remaining) == len(table.merges):
                return f"No merge at ({row}, {col})"
            table.merges = remaining
            return None

        return self._edit_block(table_id, BlockType.TABLE, "unmerge cells", apply)

    def set_header_rows(self, table_id: str, count: int) -> bool:
        """Mark the first ``count`` rows as header rows and the rest as body rows."""
        def apply(table: TableBlock) -> Optional[str]:
            if count < 0 or count > len(table.rows):
                return f"Invalid header row count {count}"
            for idx, row in enumerate(table.rows):
                row.is_header = idx < count
            return None

        return self._edit_block(table_id, BlockType.TABLE, "set header rows", apply)

    # =========================================================================
    # History
    # =========================================================================

    def undo(self) -> bool:
        entry = self._history.undo()
        if entry is None:
            return False
        logger.info(f"[MUTATION] undo {entry.label}")
        self._store.commit_template(entry.before)
        self._clear_stale_selection()
        return True

    def redo(self) -> bool:
        entry = self._history.redo()
        if entry is None:
            return False
        logger.info(f"[MUTATION] redo {entry.label}")
        self._store.commit_template(entry.after)
        self._clear_stale_selection()
        return True

    @contextmanager
    def batch(self, label: str = "batch") -> Iterator[None]:
        """Group several mutations into one undo step.

        If the block raises, the template is restored to its state at entry.
        """
        if self._batch_depth > 0:
            yield
            return

        before = self._store.get_template()
        self._batch_depth += 1
        try:
            yield
        except Exception:
            self._store.commit_template(before)
            raise
        finally:
            self._batch_depth -= 1

        after = self._store.get_template()
        if after != before:
            self._history.push(HistoryEntry(label=label, before=before, after=after))

    def clear_history(self) -> None:
        self._history.clear()


# =============================================================================
# HELPERS
# =============================================================================

def _field_name(model_cls, key: str) -> str | None:
    """Resolve a python field name or its camelCase alias to the field name."""
    if key in model_cls.model_fields:
        return key
    for name, info in model_cls.model_fields.items():
        if info.alias == key:
            return name
    return None


def _table_width(table: TableBlock) -> int:
    if table.rows:
        return len(table.rows[0].cells)
    return get_engine_settings().default_table_columns


def _sync_cell_spans(table: TableBlock) -> None:
    """Derive each cell's rendered colspan/rowspan from the merge records."""
    for row in table.rows:
        for cell in row.cells:
            cell.colspan = 1
            cell.rowspan = 1
    for m in table.merges:
        if m.row < len(table.rows) and m.col < len(table.rows[m.row].cells):
            anchor = table.rows[m.row].cells[m.col]
            anchor.colspan = m.col_span
            anchor.rowspan = m.row_span


def _to_full_grid(table: TableBlock, new_id: Callable[[], str]) -> None:
    """Rebuild a span-described table as a full grid with merge records.

    Covered slots get empty cells. A cell hidden under another cell's rowspan
    hands its children to the anchor covering it.
    """
    widths = {len(row.cells) for row in table.rows}
    if not merge_grid.is_rendered_shape(table.rows, table.merges) and len(widths) <= 1:
        return

    height = len(table.rows)
    columns = merge_grid.spanned_columns(table.rows)
    visible = {(r, index) for r, index, _ in merge_grid.visible_span_cells(table.rows)}
    width = max(
        (col + max(cell.colspan, 1) for row, cols in zip(table.rows, columns) for cell, col in zip(row.cells, cols)),
        default=0,
    )

    grid: List[List[Any]] = [[None] * width for _ in table.rows]
    merges: List[CellMerge] = []
    hidden = []
    for r, row in enumerate(table.rows):
        for index, cell in enumerate(row.cells):
            col = columns[r][index]
            if (r, index) not in visible:
                hidden.append((r, col, cell))
                continue
            grid[r][col] = cell
            row_span = min(max(cell.rowspan, 1), height - r)
            col_span = max(cell.colspan, 1)
            if row_span > 1 or col_span > 1:
                merges.append(CellMerge(row=r, col=col, row_span=row_span, col_span=col_span))

    for r, col, cell in hidden:
        merge = merge_grid.find_merge_at(r, col, merges)
        if merge is not None and cell.children:
            grid[merge.row][merge.col].children.extend(cell.children)

    for r, row in enumerate(table.rows):
        row.cells = [cell if cell is not None else create_cell(new_id) for cell in grid[r]]
    table.merges = merges
    logger.debug(f"[TABLE] Converted table {table.id} to a {height}x{width} grid with {len(merges)} merge(s)")
