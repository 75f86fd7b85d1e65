"""Tests for merge-grid bookkeeping."""

import sys
from pathlib import Path

# Add project root to path (tests/engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from models.schemas import CellMerge, CellSelection, TableCell, TableRow
from services.merge_grid import (
    can_merge,
    cell_slot_name,
    expand_selection_for_merges,
    find_merge_at,
    is_cell_covered,
    is_rendered_shape,
    merges_inside,
    normalize_selection,
    parse_cell_name,
    rowspan_occupied,
    shift_merges_for_col_insert,
    shift_merges_for_col_remove,
    shift_merges_for_row_insert,
    shift_merges_for_row_remove,
    spanned_columns,
    visible_span_cells,
)


def _sel(r1, c1, r2, c2):
    return CellSelection(start_row=r1, start_col=c1, end_row=r2, end_col=c2)


class TestCellNames:
    def test_slot_name(self):
        assert cell_slot_name(2, 3) == "cell-2-3"

    def test_parse_valid_name(self):
        assert parse_cell_name("cell-10-0") == (10, 0)

    def test_parse_invalid_names(self):
        assert parse_cell_name("cell-a-1") is None
        assert parse_cell_name("column-1-1") is None
        assert parse_cell_name("cell-1") is None

    def test_names_round_trip(self):
        for row in range(11):
            for col in range(11):
                assert parse_cell_name(cell_slot_name(row, col)) == (row, col)


class TestMergeQueries:
    def test_find_merge_at(self):
        merge = CellMerge(row=1, col=1, row_span=2, col_span=2)
        assert find_merge_at(2, 2, [merge]) is merge
        assert find_merge_at(0, 0, [merge]) is None
        assert find_merge_at(3, 1, [merge]) is None

    def test_covered_excludes_anchor(self):
        merges = [CellMerge(row=0, col=0, row_span=2, col_span=2)]
        assert not is_cell_covered(0, 0, merges)
        assert is_cell_covered(0, 1, merges)
        assert is_cell_covered(1, 1, merges)
        assert not is_cell_covered(2, 0, merges)

    def test_single_cell_cannot_merge(self):
        assert not can_merge(1, 1, 1, 1, [])

    def test_partial_overlap_cannot_merge(self):
        merges = [CellMerge(row=0, col=0, row_span=2, col_span=2)]
        assert not can_merge(1, 1, 2, 2, merges)

    def test_contained_merge_can_be_absorbed(self):
        merges = [CellMerge(row=0, col=0, row_span=1, col_span=2)]
        assert can_merge(0, 0, 1, 2, merges)
        assert merges_inside(_sel(0, 0, 1, 2), merges) == merges


class TestShifting:
    def test_row_insert_above_moves_merge(self):
        merges = [CellMerge(row=2, col=0, row_span=2, col_span=1)]
        shifted = shift_merges_for_row_insert(merges, 1)
        assert shifted[0].row == 3
        assert merges[0].row == 2

    def test_row_insert_inside_grows_merge(self):
        merges = [CellMerge(row=0, col=0, row_span=2, col_span=2)]
        shifted = shift_merges_for_row_insert(merges, 1)
        assert (shifted[0].row, shifted[0].row_span) == (0, 3)

    def test_row_insert_below_leaves_merge(self):
        merges = [CellMerge(row=0, col=0, row_span=2, col_span=2)]
        shifted = shift_merges_for_row_insert(merges, 2)
        assert (shifted[0].row, shifted[0].row_span) == (0, 2)

    def test_row_remove_drops_single_row_merge(self):
        merges = [CellMerge(row=1, col=0, row_span=1, col_span=2)]
        assert shift_merges_for_row_remove(merges, 1) == []

    def test_row_remove_shrinks_spanning_merge(self):
        merges = [CellMerge(row=0, col=0, row_span=3, col_span=1)]
        shifted = shift_merges_for_row_remove(merges, 1)
        assert (shifted[0].row, shifted[0].row_span) == (0, 2)

    def test_row_remove_above_moves_merge_up(self):
        merges = [CellMerge(row=2, col=0, row_span=2, col_span=1)]
        shifted = shift_merges_for_row_remove(merges, 0)
        assert shifted[0].row == 1

    def test_col_insert_and_remove(self):
        merges = [CellMerge(row=0, col=1, row_span=1, col_span=2)]
        assert shift_merges_for_col_insert(merges, 0)[0].col == 2
        assert shift_merges_for_col_insert(merges, 2)[0].col_span == 3
        assert shift_merges_for_col_remove(merges, 2) == []
        assert shift_merges_for_col_remove(merges, 0)[0].col == 0


class TestSelection:
    def test_normalize_swaps_corners(self):
        sel = normalize_selection(_sel(3, 4, 1, 0))
        assert (sel.start_row, sel.start_col, sel.end_row, sel.end_col) == (1, 0, 3, 4)

    def test_expand_includes_touched_merge(self):
        merges = [CellMerge(row=0, col=0, row_span=2, col_span=2)]
        sel = expand_selection_for_merges(_sel(1, 1, 1, 2), merges)
        assert (sel.start_row, sel.start_col, sel.end_row, sel.end_col) == (0, 0, 1, 2)

    def test_expand_follows_chain_of_merges(self):
        # listed so each merge is only reachable after the next one grew the selection
        merges = [
            CellMerge(row=0, col=2, row_span=1, col_span=2),
            CellMerge(row=1, col=1, row_span=1, col_span=2),
            CellMerge(row=0, col=0, row_span=2, col_span=1),
        ]
        sel = expand_selection_for_merges(_sel(0, 0, 0, 1), merges)
        assert (sel.start_row, sel.start_col, sel.end_row, sel.end_col) == (0, 0, 1, 3)

    def test_expand_without_merges_is_identity(self):
        sel = expand_selection_for_merges(_sel(0, 0, 1, 1), [])
        assert (sel.start_row, sel.start_col, sel.end_row, sel.end_col) == (0, 0, 1, 1)


class TestSpanDescribedRows:
    def _rows(self, *rows):
        return [
            TableRow(
                id=f"r{r}",
                cells=[TableCell(id=f"c{r}{i}", colspan=cs, rowspan=rs) for i, (cs, rs) in enumerate(row)],
            )
            for r, row in enumerate(rows)
        ]

    def test_is_rendered_shape(self):
        rows = self._rows([(2, 1), (1, 1)], [(1, 1)] * 3)
        assert is_rendered_shape(rows, [])
        assert not is_rendered_shape(rows, [CellMerge(row=0, col=0, row_span=1, col_span=2)])
        assert not is_rendered_shape(self._rows([(1, 1)] * 2), [])

    def test_columns_follow_colspans(self):
        rows = self._rows([(2, 1), (1, 1)], [(1, 1)] * 3)
        assert spanned_columns(rows) == [[0, 2], [0, 1, 2]]
        assert visible_span_cells(rows) == [(0, 0, 0), (0, 1, 2), (1, 0, 0), (1, 1, 1), (1, 2, 2)]

    def test_rowspan_hides_cells_below(self):
        rows = self._rows([(1, 3), (1, 1)], [(1, 1), (1, 1)], [(1, 1), (1, 1)])
        assert rowspan_occupied(rows, 1) == {0}
        assert rowspan_occupied(rows, 2) == {0}
        assert (1, 0, 0) not in visible_span_cells(rows)
        assert (2, 1, 1) in visible_span_cells(rows)
