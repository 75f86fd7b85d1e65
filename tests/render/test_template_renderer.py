"""Tests for the async HTML template renderer."""

import asyncio
import random
import sys
from pathlib import Path

# Add project root to path (tests/render/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from models.schemas import (
    CellMerge,
    Column,
    ColumnsBlock,
    ConditionalBlock,
    ContainerBlock,
    EvaluationResult,
    Expression,
    LoopBlock,
    PageBreakBlock,
    PageFooterBlock,
    PreviewOverrides,
    TableBlock,
    TableCell,
    TableRow,
    TextBlock,
)
from services.template_renderer import (
    merge_styles,
    render_template,
    render_template_with_diagnostics,
    style_to_string,
)


DATA = {
    "customer": {"name": "Ada", "vip": True},
    "items": [{"price": 10}, {"price": 25}],
    "none": [],
}


def _paragraph(*parts):
    nodes = []
    for part in parts:
        if part.startswith("="):
            nodes.append({"type": "expression", "attrs": {"expression": part[1:]}})
        else:
            nodes.append({"type": "text", "text": part})
    return {"type": "paragraph", "content": nodes}


def _text(block_id, *parts, styles=None):
    return TextBlock(id=block_id, styles=styles or {}, content={"type": "doc", "content": [_paragraph(*parts)]})


def render(blocks, data=DATA, **kwargs):
    return asyncio.run(render_template(blocks, data, **kwargs))


class TestStyles:
    def test_only_inheritable_document_styles_cascade(self):
        merged = merge_styles({"fontFamily": "Inter", "margin": "4px", "color": "#000"}, {"color": "red"})
        assert merged == {"fontFamily": "Inter", "color": "red"}

    def test_style_to_string(self):
        assert style_to_string({"fontSize": "12px", "color": "red", "empty": ""}) == "font-size: 12px; color: red"


class TestText:
    def test_expression_substitution(self):
        html = render([_text("t1", "Hello ", "=customer.name", "!")])
        assert html == '<p style="margin: 0 0 1em 0;">Hello Ada!</p>'

    def test_missing_value_renders_empty(self):
        assert ">Hi </p>" in render([_text("t1", "Hi ", "=customer.email")])

    def test_failed_expression_is_marked(self):
        html = render([_text("t1", "=customer..name")])
        assert "[Error: customer..name]" in html

    def test_styles_wrap_text(self):
        html = render([_text("t1", "x", styles={"fontWeight": "bold"})], document_styles={"fontFamily": "Inter"})
        assert html.startswith('<div style="font-family: Inter; font-weight: bold">')

    def test_rich_content(self):
        block = TextBlock(
            id="t1",
            content={
                "type": "doc",
                "content": [
                    {"type": "heading", "attrs": {"level": 2}, "content": [{"type": "text", "text": "Title"}]},
                    {
                        "type": "paragraph",
                        "content": [
                            {"type": "text", "text": "bold", "marks": [{"type": "bold"}, {"type": "italic"}]},
                            {"type": "hardBreak"},
                            {"type": "text", "text": "plain"},
                        ],
                    },
                    {
                        "type": "bulletList",
                        "content": [{"type": "listItem", "content": [_paragraph("One")]}],
                    },
                ],
            },
        )
        html = render([block])
        assert "<h2" in html and "Title</h2>" in html
        assert "<em><strong>bold</strong></em><br>plain" in html
        assert "<li>One</li>" in html

    def test_empty_text_block(self):
        assert render([TextBlock(id="t1")]) == ""


class TestLogicBlocks:
    def test_conditional_true_and_inverse(self):
        shown = ConditionalBlock(id="c1", condition=Expression(raw="customer.vip"), children=[_text("t", "VIP")])
        hidden = ConditionalBlock(
            id="c2", condition=Expression(raw="customer.vip"), inverse=True, children=[_text("u", "REGULAR")]
        )
        html = render([shown, hidden])
        assert "VIP" in html
        assert "REGULAR" not in html

    def test_conditional_failure_counts_as_false(self):
        block = ConditionalBlock(id="c1", condition=Expression(raw="bad..path"), children=[_text("t", "X")])
        assert render([block]) == ""

    def test_empty_list_is_truthy(self):
        block = ConditionalBlock(id="c1", condition=Expression(raw="none"), children=[_text("t", "LISTED")])
        assert "LISTED" in render([block])

    @pytest.mark.parametrize("value", [0, "", None, float("nan")])
    def test_falsy_values_hide(self, value):
        block = ConditionalBlock(id="c1", condition=Expression(raw="flag"), children=[_text("t", "X")])
        assert render([block], data={"flag": value}) == ""

    def test_conditional_overrides(self):
        block = ConditionalBlock(id="c1", condition=Expression(raw="customer.vip"), children=[_text("t", "VIP")])
        assert render([block], overrides=PreviewOverrides(conditionals={"c1": "hide"})) == ""
        block.inverse = True
        assert "VIP" in render([block], overrides=PreviewOverrides(conditionals={"c1": "show"}))

    def test_loop_over_items(self):
        loop = LoopBlock(
            id="l1",
            expression=Expression(raw="items"),
            item_alias="line",
            index_alias="i",
            children=[_text("t", "=i", ":", "=line.price")],
        )
        html = render([loop])
        assert html.index("0:10") < html.index("1:25")

    def test_loop_non_list_renders_nothing(self):
        loop = LoopBlock(id="l1", expression=Expression(raw="customer"), children=[_text("t", "row")])
        assert render([loop]) == ""

    def test_loop_override_wraps_items(self):
        loop = LoopBlock(id="l1", expression=Expression(raw="items"), children=[_text("t", "=item.price")])
        html = render([loop], overrides=PreviewOverrides(loops={"l1": 3}))
        assert html == "".join(f'<p style="margin: 0 0 1em 0;">{price}</p>' for price in (10, 25, 10))

    def test_loop_override_on_empty_source(self):
        loop = LoopBlock(id="l1", expression=Expression(raw="none"), children=[_text("t", "row")])
        assert render([loop], overrides=PreviewOverrides(loops={"l1": 2})).count("row") == 2


class TestLayoutBlocks:
    def test_container_header_footer(self):
        html = render(
            [
                ContainerBlock(id="box", styles={"padding": "4px"}, children=[_text("t", "in")]),
                PageFooterBlock(id="f", children=[_text("u", "page")]),
            ]
        )
        assert html.startswith('<div style="padding: 4px"><p')
        assert "<footer><p" in html

    def test_columns(self):
        block = ColumnsBlock(
            id="cols",
            gap=8,
            columns=[Column(id="a", size=2, children=[_text("t", "left")]), Column(id="b", children=[])],
        )
        html = render([block])
        assert html.startswith('<div style="display: flex; gap: 8px">')
        assert '<div style="flex: 2;">' in html
        assert '<div style="flex: 1;"></div>' in html

    def test_table_with_merged_cells(self):
        table = TableBlock(
            id="tbl",
            border_style="horizontal",
            rows=[
                TableRow(
                    id="r0",
                    is_header=True,
                    cells=[TableCell(id="a", colspan=2, children=[_text("t", "Head")]), TableCell(id="b")],
                ),
                TableRow(id="r1", cells=[TableCell(id="c", rowspan=2), TableCell(id="d")]),
                TableRow(id="r2", cells=[TableCell(id="e"), TableCell(id="f", children=[_text("u", "tail")])]),
            ],
            merges=[CellMerge(row=0, col=0, row_span=1, col_span=2), CellMerge(row=1, col=0, row_span=2, col_span=1)],
        )
        html = render([table])
        assert html.startswith('<table style="width: 100%; border-top:')
        assert html.count("<th") == 1
        assert 'colspan="2"' in html
        assert 'rowspan="2"' in html
        assert html.count("<td") == 3
        assert "border-bottom: 1px solid #d1d5db" in html
        assert "tail" in html

    def test_merges_decide_spans(self):
        table = TableBlock(
            id="tbl",
            rows=[
                TableRow(id="r0", cells=[TableCell(id="a", children=[_text("t", "A")]), TableCell(id="b")]),
                TableRow(id="r1", cells=[TableCell(id="c"), TableCell(id="d")]),
            ],
            merges=[CellMerge(row=0, col=0, row_span=2, col_span=1)],
        )
        html = render([table])
        assert 'rowspan="2"' in html
        assert html.count("<td") == 3

    def test_rows_without_covered_cells(self):
        table = TableBlock(
            id="tbl",
            rows=[
                TableRow(
                    id="r0",
                    cells=[
                        TableCell(id="a", colspan=2, children=[_text("t", "A")]),
                        TableCell(id="b", children=[_text("u", "B")]),
                    ],
                ),
                TableRow(id="r1", cells=[TableCell(id="c"), TableCell(id="d"), TableCell(id="e")]),
            ],
        )
        html = render([table])
        assert "A" in html and "B" in html
        assert html.count("<td") == 5
        assert 'colspan="2"' in html

    def test_rowspan_hides_cell_below(self):
        table = TableBlock(
            id="tbl",
            rows=[
                TableRow(id="r0", cells=[TableCell(id="a", rowspan=2), TableCell(id="b")]),
                TableRow(
                    id="r1",
                    cells=[
                        TableCell(id="c", children=[_text("t", "hidden")]),
                        TableCell(id="d", children=[_text("u", "D")]),
                    ],
                ),
            ],
        )
        html = render([table])
        assert "hidden" not in html
        assert "D" in html
        assert html.count("<td") == 3

    def test_pagebreak(self):
        assert 'class="page-break"' in render([PageBreakBlock(id="pb")])

    def test_unknown_block_type_is_skipped(self):
        unknown = TextBlock.model_construct(type="video", id="v1", styles={}, content=None)
        assert render([unknown, _text("t", "after")]) == '<p style="margin: 0 0 1em 0;">after</p>'


class SlowEchoEvaluator:
    """Returns the expression itself after a random delay."""

    def __init__(self):
        self.calls = []

    async def evaluate(self, expression, context):
        self.calls.append(expression)
        await asyncio.sleep(random.uniform(0, 0.02))
        return EvaluationResult(success=True, value=expression)


class RaisingEvaluator:
    async def evaluate(self, expression, context):
        raise RuntimeError("sandbox crashed")


class TestConcurrency:
    def test_output_keeps_source_order(self):
        blocks = [_text(f"t{i}", *[f"=e{i}{j}" for j in range(5)]) for i in range(5)]
        evaluator = SlowEchoEvaluator()
        html = render(blocks, evaluator=evaluator)
        expected = "".join(
            f'<p style="margin: 0 0 1em 0;">{"".join(f"e{i}{j}" for j in range(5))}</p>' for i in range(5)
        )
        assert html == expected
        assert len(evaluator.calls) == 25

    def test_raising_evaluator_is_localized(self):
        output = asyncio.run(
            render_template_with_diagnostics([_text("t", "a", "=x")], DATA, evaluator=RaisingEvaluator())
        )
        assert "[Error: x]" in output.html
        assert [(d.block_id, d.expression, d.message) for d in output.diagnostics] == [("t", "x", "sandbox crashed")]
