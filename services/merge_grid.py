"""Merge-grid bookkeeping for table blocks.

Pure functions over ``CellMerge`` records, ``CellSelection`` rectangles and
span-described rows.
Cells are addressed by ``(row, col)`` and by the slot name ``cell-{row}-{col}``.
Functions never mutate their inputs; shifted merges are returned as new lists.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Set, Tuple

from models.schemas import CellMerge, CellSelection, TableRow

logger = logging.getLogger(__name__)


_CELL_NAME_RE = re.compile(r"^cell-(\d+)-(\d+)$")


# =============================================================================
# CELL NAMING
# =============================================================================

def cell_slot_name(row: int, col: int) -> str:
    """Slot name for the cell at ``(row, col)``."""
    return f"cell-{row}-{col}"


def parse_cell_name(name: str) -> Optional[Tuple[int, int]]:
    """Parse ``cell-2-3`` into ``(2, 3)``, or None if the name is not a cell slot."""
    match = _CELL_NAME_RE.match(name)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


# =============================================================================
# MERGE QUERIES
# =============================================================================

def _end_row(merge: CellMerge) -> int:
    return merge.row + merge.row_span - 1


def _end_col(merge: CellMerge) -> int:
    return merge.col + merge.col_span - 1


def _overlaps(merge: CellMerge, sel: CellSelection) -> bool:
    return (
        merge.row <= sel.end_row
        and _end_row(merge) >= sel.start_row
        and merge.col <= sel.end_col
        and _end_col(merge) >= sel.start_col
    )


def find_merge_at(row: int, col: int, merges: List[CellMerge]) -> Optional[CellMerge]:
    """Return the merge whose region contains ``(row, col)``, if any."""
    for m in merges:
        if m.row <= row < m.row + m.row_span and m.col <= col < m.col + m.col_span:
            return m
    return None


def is_cell_covered(row: int, col: int, merges: List[CellMerge]) -> bool:
    """True when ``(row, col)`` lies inside a merge but is not its anchor.

    Covered cells are not rendered.
    """
    merge = find_merge_at(row, col, merges)
    if merge is None:
        return False
    return merge.row != row or merge.col != col


def can_merge(
    start_row: int,
    start_col: int,
    end_row: int,
    end_col: int,
    merges: List[CellMerge],
) -> bool:
    """Whether the rectangle can become a single merge.

    Fails for a 1x1 selection and for a selection that partially overlaps an
    existing merge. Merges fully inside the selection are fine; they get
    absorbed into the new one.
    """
    rows = end_row - start_row + 1
    cols = end_col - start_col + 1
    if rows <= 1 and cols <= 1:
        return False

    sel = CellSelection(start_row=start_row, start_col=start_col, end_row=end_row, end_col=end_col)
    for m in merges:
        if not _overlaps(m, sel):
            continue
        fully_contained = (
            m.row >= start_row
            and _end_row(m) <= end_row
            and m.col >= start_col
            and _end_col(m) <= end_col
        )
        if not fully_contained:
            return False

    return True


def merges_inside(sel: CellSelection, merges: List[CellMerge]) -> List[CellMerge]:
    """Merges entirely contained in ``sel``."""
    return [
        m
        for m in merges
        if m.row >= sel.start_row
        and _end_row(m) <= sel.end_row
        and m.col >= sel.start_col
        and _end_col(m) <= sel.end_col
    ]


# =============================================================================
# SHIFTING FOR ROW / COLUMN INSERT AND REMOVE
# =============================================================================

def shift_merges_for_row_insert(merges: List[CellMerge], position: int) -> List[CellMerge]:
    """Adjust merges after inserting a row at ``position``.

    Merges anchored at or below ``position`` move down by one; merges that
    span across it grow by one row.
    """
    result = []
    for m in merges:
        if m.row >= position:
            result.append(m.model_copy(update={"row": m.row + 1}))
        elif m.row + m.row_span > position:
            result.append(m.model_copy(update={"row_span": m.row_span + 1}))
        else:
            result.append(m.model_copy())
    return result


def shift_merges_for_row_remove(merges: List[CellMerge], position: int) -> List[CellMerge]:
    """Adjust merges after removing the row at ``position``.

    Single-row merges anchored on the removed row are dropped. Merges spanning
    it shrink, and are dropped once only one cell is left. Merges below it
    move up.
    """
    result = []
    for m in merges:
        if m.row > position:
            result.append(m.model_copy(update={"row": m.row - 1}))
        elif _end_row(m) < position:
            result.append(m.model_copy())
        elif m.row == position and m.row_span == 1:
            continue
        else:
            new_span = m.row_span - 1
            # a merge shrunk to a single cell is no merge at all
            if new_span > 1 or m.col_span > 1:
                result.append(m.model_copy(update={"row_span": new_span}))
    return result


def shift_merges_for_col_insert(merges: List[CellMerge], position: int) -> List[CellMerge]:
    """Column counterpart of :func:`shift_merges_for_row_insert`."""
    result = []
    for m in merges:
        if m.col >= position:
            result.append(m.model_copy(update={"col": m.col + 1}))
        elif m.col + m.col_span > position:
            result.append(m.model_copy(update={"col_span": m.col_span + 1}))
        else:
            result.append(m.model_copy())
    return result


def shift_merges_for_col_remove(merges: List[CellMerge], position: int) -> List[CellMerge]:
    """Column counterpart of :func:`shift_merges_for_row_remove`."""
    result = []
    for m in merges:
        if m.col > position:
            result.append(m.model_copy(update={"col": m.col - 1}))
        elif _end_col(m) < position:
            result.append(m.model_copy())
        elif m.col == position and m.col_span == 1:
            continue
        else:
            new_span = m.col_span - 1
            if new_span > 1 or m.row_span > 1:
                result.append(m.model_copy(update={"col_span": new_span}))
    return result


# =============================================================================
# SELECTION
# =============================================================================

def normalize_selection(sel: CellSelection) -> CellSelection:
    """Return ``sel`` with ``start <= end`` on both axes."""
    return CellSelection(
        start_row=min(sel.start_row, sel.end_row),
        start_col=min(sel.start_col, sel.end_col),
        end_row=max(sel.start_row, sel.end_row),
        end_col=max(sel.start_col, sel.end_col),
    )


def expand_selection_for_merges(sel: CellSelection, merges: List[CellMerge]) -> CellSelection:
    """Grow ``sel`` until every merge it touches lies fully inside it.

    Growing to include one merge can expose overlap with another, so this
    repeats until nothing changes. The loop is capped by the number of cells
    in the bounding grid so contradictory merge data cannot spin forever.
    """
    current = normalize_selection(sel)

    max_row = max([current.end_row] + [_end_row(m) for m in merges])
    max_col = max([current.end_col] + [_end_col(m) for m in merges])
    max_iterations = (max_row + 1) * (max_col + 1) + 1

    for _ in range(max_iterations):
        changed = False
        for m in merges:
            if not _overlaps(m, current):
                continue
            if m.row < current.start_row:
                current.start_row = m.row
                changed = True
            if m.col < current.start_col:
                current.start_col = m.col
                changed = True
            if _end_row(m) > current.end_row:
                current.end_row = _end_row(m)
                changed = True
            if _end_col(m) > current.end_col:
                current.end_col = _end_col(m)
                changed = True
        if not changed:
            return current

    logger.warning(f"[TABLE] Selection expansion did not converge after {max_iterations} passes")
    return current


# =============================================================================
# RENDERED SHAPE
# =============================================================================

def is_rendered_shape(rows: List[TableRow], merges: List[CellMerge]) -> bool:
    """True for a table described only by cell spans, with no merge records.

    Such rows leave out the cells a colspan covers. Tables with merge
    records keep every cell of the grid in place instead.
    """
    if merges:
        return False
    return any(cell.colspan > 1 or cell.rowspan > 1 for row in rows for cell in row.cells)


def spanned_columns(rows: List[TableRow]) -> List[List[int]]:
    """Grid column of every cell: the sum of the colspans before it in its row."""
    columns = []
    for row in rows:
        col = 0
        row_columns = []
        for cell in row.cells:
            row_columns.append(col)
            col += max(cell.colspan, 1)
        columns.append(row_columns)
    return columns


def rowspan_occupied(rows: List[TableRow], row_index: int) -> Set[int]:
    """Columns of ``row_index`` held by rowspans of cells in earlier rows."""
    columns = spanned_columns(rows[:row_index])
    occupied: Set[int] = set()
    for prev_index, prev_row in enumerate(rows[:row_index]):
        for cell, col in zip(prev_row.cells, columns[prev_index]):
            if prev_index + max(cell.rowspan, 1) > row_index:
                occupied.update(range(col, col + max(cell.colspan, 1)))
    return occupied


def visible_span_cells(rows: List[TableRow]) -> List[Tuple[int, int, int]]:
    """``(row, index, col)`` of every cell a span-described table renders.

    A cell whose column is held by a rowspan from an earlier row is hidden.
    """
    columns = spanned_columns(rows)
    visible = []
    for r, row in enumerate(rows):
        occupied = rowspan_occupied(rows, r)
        for index, col in enumerate(columns[r]):
            if col not in occupied:
                visible.append((r, index, col))
    return visible
