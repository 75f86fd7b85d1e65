"""Async template renderer.

Walks the block tree against a data payload and produces an HTML fragment.
Every expression goes through the injected evaluator; sibling blocks and
sibling expressions are evaluated concurrently and assembled in source
order.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from lxml import etree

from models.schemas import Block, BlockType, EvaluationResult, PreviewOverrides, TableBlock
from services import merge_grid
from services.evaluators import DirectEvaluator, ExpressionEvaluator
from services.expression_analyzer import EXPRESSION_NODE_TYPE, iter_content_expressions

logger = logging.getLogger(__name__)


# Document style properties that cascade into blocks
INHERITABLE_STYLE_PROPERTIES = (
    "fontFamily",
    "fontSize",
    "fontWeight",
    "color",
    "lineHeight",
    "letterSpacing",
    "textAlign",
)

_CAMEL_RE = re.compile(r"([A-Z])")

_BORDER = "1px solid #d1d5db"

# border_style -> (table declarations, cell declarations)
_TABLE_BORDERS: Dict[str, Tuple[Dict[str, str], Dict[str, str]]] = {
    "all": ({"border": _BORDER, "border-collapse": "collapse"}, {"border": _BORDER}),
    "horizontal": (
        {"border-top": _BORDER, "border-bottom": _BORDER, "border-collapse": "collapse"},
        {"border-bottom": _BORDER},
    ),
    "vertical": (
        {"border-left": _BORDER, "border-right": _BORDER, "border-collapse": "collapse"},
        {"border-right": _BORDER},
    ),
    "none": ({"border-collapse": "collapse"}, {}),
}

_HEADING_STYLES = {
    1: "font-size: 2em; font-weight: bold; margin: 0 0 0.5em 0;",
    2: "font-size: 1.5em; font-weight: bold; margin: 0 0 0.5em 0;",
    3: "font-size: 1.17em; font-weight: bold; margin: 0 0 0.5em 0;",
}
_PARAGRAPH_STYLE = "margin: 0 0 1em 0;"
_LIST_STYLE = "margin: 0 0 1em 0; padding-left: 1.5em;"

_MARK_TAGS = {"bold": "strong", "italic": "em", "underline": "u", "strike": "s"}


# =============================================================================
# STYLES
# =============================================================================

def merge_styles(document_styles: Optional[Dict[str, Any]], block_styles: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Inheritable document styles overlaid by the block's own styles."""
    merged: Dict[str, Any] = {}
    for prop in INHERITABLE_STYLE_PROPERTIES:
        value = (document_styles or {}).get(prop)
        if value not in (None, ""):
            merged[prop] = value
    for prop, value in (block_styles or {}).items():
        if value not in (None, ""):
            merged[prop] = value
    return merged


def style_to_string(styles: Dict[str, Any]) -> str:
    """``{"fontSize": "12px"}`` -> ``"font-size: 12px"``."""
    parts = []
    for prop, value in styles.items():
        if value in (None, ""):
            continue
        css_prop = _CAMEL_RE.sub(lambda m: "-" + m.group(1).lower(), prop)
        parts.append(f"{css_prop}: {value}")
    return "; ".join(parts)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def is_truthy(value: Any) -> bool:
    """Truthiness of evaluator output. Empty lists and objects count as true."""
    if value is None or value is False or value == "":
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == value and value != 0
    return True


def _append_text(parent: etree._Element, text: str) -> None:
    if not text:
        return
    if len(parent):
        last = parent[-1]
        last.tail = (last.tail or "") + text
    else:
        parent.text = (parent.text or "") + text


def _element(tag: str, style: str = "", **attrs: str) -> etree._Element:
    el = etree.Element(tag)
    if style:
        el.set("style", style)
    for name, value in attrs.items():
        el.set(name.rstrip("_"), value)
    return el


# =============================================================================
# RENDER PASS
# =============================================================================

@dataclass
class RenderDiagnostic:
    """An expression that failed during a render pass."""
    block_id: str
    expression: str
    message: str


@dataclass
class RenderOutput:
    html: str
    diagnostics: List[RenderDiagnostic] = field(default_factory=list)


class _RenderPass:
    def __init__(
        self,
        data: Dict[str, Any],
        overrides: PreviewOverrides,
        evaluator: ExpressionEvaluator,
        document_styles: Dict[str, Any],
    ):
        self.data = data
        self.overrides = overrides
        self.evaluator = evaluator
        self.document_styles = document_styles
        self.diagnostics: List[RenderDiagnostic] = []

    async def evaluate(self, block_id: str, expression: str, context: Dict[str, Any]) -> EvaluationResult:
        merged_context = {**self.data, **context}
        try:
            result = await self.evaluator.evaluate(expression, merged_context)
        except Exception as e:
            logger.warning(f"[RENDER] Evaluator raised for '{expression}': {e}")
            result = EvaluationResult(success=False, error=str(e) or type(e).__name__)
        if not result.success:
            self.diagnostics.append(
                RenderDiagnostic(block_id=block_id, expression=expression, message=result.error or "Evaluation failed")
            )
        return result

    async def render_blocks(self, blocks: List[Block], context: Dict[str, Any]) -> List[etree._Element]:
        rendered = await asyncio.gather(*(self.render_block(block, context) for block in blocks))
        return [el for group in rendered for el in group]

    async def render_block(self, block: Block, context: Dict[str, Any]) -> List[etree._Element]:
        block_type = getattr(block, "type", None)
        if block_type == BlockType.TEXT:
            return await self._render_text(block, context)
        if block_type == BlockType.CONTAINER:
            return [await self._wrap("div", block, context)]
        if block_type == BlockType.PAGEHEADER:
            return [await self._wrap("header", block, context)]
        if block_type == BlockType.PAGEFOOTER:
            return [await self._wrap("footer", block, context)]
        if block_type == BlockType.CONDITIONAL:
            return await self._render_conditional(block, context)
        if block_type == BlockType.LOOP:
            return await self._render_loop(block, context)
        if block_type == BlockType.COLUMNS:
            return [await self._render_columns(block, context)]
        if block_type == BlockType.TABLE:
            return [await self._render_table(block, context)]
        if block_type == BlockType.PAGEBREAK:
            return [_element("div", "page-break-after: always", class_="page-break")]

        logger.warning(f"[RENDER] Unknown block type: {block_type}")
        return []

    async def _wrap(self, tag: str, block: Block, context: Dict[str, Any]) -> etree._Element:
        el = _element(tag, style_to_string(merge_styles(self.document_styles, block.styles)))
        el.extend(await self.render_blocks(block.children, context))
        return el

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    async def _render_text(self, block: Block, context: Dict[str, Any]) -> List[etree._Element]:
        expressions = list(iter_content_expressions(block.content))
        results = await asyncio.gather(*(self.evaluate(block.id, expr, context) for expr in expressions))
        values = iter(
            _stringify(result.value) if result.success else f"[Error: {expr}]"
            for expr, result in zip(expressions, results)
        )

        holder = etree.Element("div")
        if block.content:
            _build_nodes(holder, block.content.get("content") or [], values)

        style = style_to_string(merge_styles(self.document_styles, block.styles))
        if style:
            holder.set("style", style)
            return [holder]
        elements = list(holder)
        if holder.text:
            # loose inline content at the top level
            span = etree.Element("span")
            span.text = holder.text
            elements.insert(0, span)
        return elements

    # -------------------------------------------------------------------------
    # Logic blocks
    # -------------------------------------------------------------------------

    async def _render_conditional(self, block: Block, context: Dict[str, Any]) -> List[etree._Element]:
        mode = self.overrides.conditionals.get(block.id, "data")
        if mode == "hide":
            return []
        if mode != "show":
            result = await self.evaluate(block.id, block.condition.raw, context)
            show = is_truthy(result.value) if result.success else False
            if block.inverse:
                show = not show
            if not show:
                return []
        return await self.render_blocks(block.children, context)

    async def _render_loop(self, block: Block, context: Dict[str, Any]) -> List[etree._Element]:
        result = await self.evaluate(block.id, block.expression.raw, context)
        array = result.value if result.success and isinstance(result.value, list) else []

        override = self.overrides.loops.get(block.id, "data")
        if isinstance(override, int) and not isinstance(override, bool):
            count = max(override, 0)
            items = [array[i % len(array)] if array else {} for i in range(count)]
        else:
            items = list(array)

        scopes = []
        for index, item in enumerate(items):
            scope = {**context, block.item_alias: item}
            if block.index_alias:
                scope[block.index_alias] = index
            scopes.append(scope)

        rendered = await asyncio.gather(*(self.render_blocks(block.children, scope) for scope in scopes))
        return [el for group in rendered for el in group]

    # -------------------------------------------------------------------------
    # Layout blocks
    # -------------------------------------------------------------------------

    async def _render_columns(self, block: Block, context: Dict[str, Any]) -> etree._Element:
        styles = merge_styles(self.document_styles, block.styles)
        style = "; ".join(filter(None, [f"display: flex; gap: {block.gap}px", style_to_string(styles)]))
        el = _element("div", style)

        rendered = await asyncio.gather(*(self.render_blocks(col.children, context) for col in block.columns))
        for column, children in zip(block.columns, rendered):
            size = _stringify(column.size)
            col_el = etree.SubElement(el, "div", style=f"flex: {size};")
            col_el.extend(children)
        return el

    async def _render_table(self, block: TableBlock, context: Dict[str, Any]) -> etree._Element:
        table_border, cell_border = _TABLE_BORDERS.get(block.border_style, _TABLE_BORDERS["all"])
        table_styles = {"width": "100%", **merge_styles(self.document_styles, block.styles), **table_border}
        table = _element("table", style_to_string(table_styles))
        tbody = etree.SubElement(table, "tbody")

        layout = list(_table_layout(block))
        rendered = await asyncio.gather(
            *(self.render_blocks(block.rows[r].cells[i].children, context) for r, i, _, _ in layout)
        )

        row_elements = [etree.SubElement(tbody, "tr") for _ in block.rows]
        for (r, i, colspan, rowspan), children in zip(layout, rendered):
            row = block.rows[r]
            cell = row.cells[i]
            cell_style = style_to_string({"padding": "8px", **cell_border, **cell.styles})
            cell_el = etree.SubElement(row_elements[r], "th" if row.is_header else "td", style=cell_style)
            if colspan > 1:
                cell_el.set("colspan", str(colspan))
            if rowspan > 1:
                cell_el.set("rowspan", str(rowspan))
            cell_el.extend(children)
        return table


def _table_layout(table: TableBlock) -> Iterator[Tuple[int, int, int, int]]:
    """``(row, index, colspan, rowspan)`` of every rendered cell.

    With merge records the grid is full and the merges decide which cells are
    covered and how far anchors span. Without them the cells' own spans are
    used and rows leave out the cells a colspan covers.
    """
    if table.merges:
        for r, row in enumerate(table.rows):
            for c in range(len(row.cells)):
                if merge_grid.is_cell_covered(r, c, table.merges):
                    continue
                merge = merge_grid.find_merge_at(r, c, table.merges)
                if merge is None:
                    yield r, c, 1, 1
                else:
                    yield r, c, merge.col_span, merge.row_span
        return

    for r, index, _ in merge_grid.visible_span_cells(table.rows):
        cell = table.rows[r].cells[index]
        yield r, index, max(cell.colspan, 1), max(cell.rowspan, 1)


# =============================================================================
# TIPTAP CONTENT
# =============================================================================

def _build_nodes(parent: etree._Element, nodes: List[Dict[str, Any]], values: Iterator[str]) -> None:
    for node in nodes:
        if isinstance(node, dict):
            _build_node(parent, node, values)


def _build_node(parent: etree._Element, node: Dict[str, Any], values: Iterator[str]) -> None:
    node_type = node.get("type")
    children = node.get("content") or []

    if node_type == "text":
        _append_marked(parent, node.get("text") or "", node.get("marks") or [])
    elif node_type == EXPRESSION_NODE_TYPE:
        expression = (node.get("attrs") or {}).get("expression")
        if expression:
            _append_text(parent, next(values, ""))
    elif node_type == "hardBreak":
        etree.SubElement(parent, "br")
    elif node_type == "paragraph":
        _build_nodes(etree.SubElement(parent, "p", style=_PARAGRAPH_STYLE), children, values)
    elif node_type == "heading":
        level = (node.get("attrs") or {}).get("level", 1)
        level = level if level in _HEADING_STYLES else 1
        _build_nodes(etree.SubElement(parent, f"h{level}", style=_HEADING_STYLES[level]), children, values)
    elif node_type in ("bulletList", "orderedList"):
        tag = "ul" if node_type == "bulletList" else "ol"
        _build_nodes(etree.SubElement(parent, tag, style=_LIST_STYLE), children, values)
    elif node_type == "listItem":
        item = etree.SubElement(parent, "li")
        for child in children:
            # paragraphs inside list items render inline
            if isinstance(child, dict) and child.get("type") == "paragraph":
                _build_nodes(item, child.get("content") or [], values)
            elif isinstance(child, dict):
                _build_node(item, child, values)
    else:
        _build_nodes(parent, children, values)


def _append_marked(parent: etree._Element, text: str, marks: List[Dict[str, Any]]) -> None:
    tags = [_MARK_TAGS[m.get("type")] for m in marks if isinstance(m, dict) and m.get("type") in _MARK_TAGS]
    # first mark is innermost
    tags.reverse()
    if not tags:
        _append_text(parent, text)
        return
    outer = etree.SubElement(parent, tags[0])
    inner = outer
    for tag in tags[1:]:
        inner = etree.SubElement(inner, tag)
    inner.text = text


# =============================================================================
# ENTRY POINTS
# =============================================================================

async def render_template_with_diagnostics(
    blocks: List[Block],
    data: Dict[str, Any] | None = None,
    overrides: PreviewOverrides | None = None,
    evaluator: ExpressionEvaluator | None = None,
    document_styles: Dict[str, Any] | None = None,
    context: Dict[str, Any] | None = None,
) -> RenderOutput:
    """Render ``blocks`` and report every expression that failed to evaluate."""
    render_pass = _RenderPass(
        data=data or {},
        overrides=overrides or PreviewOverrides(),
        evaluator=evaluator or DirectEvaluator(),
        document_styles=document_styles or {},
    )
    elements = await render_pass.render_blocks(blocks, context or {})
    html = "".join(etree.tostring(el, method="html", encoding="unicode") for el in elements)
    if render_pass.diagnostics:
        logger.debug(f"[RENDER] {len(render_pass.diagnostics)} expression(s) failed")
    return RenderOutput(html=html, diagnostics=render_pass.diagnostics)


async def render_template(
    blocks: List[Block],
    data: Dict[str, Any] | None = None,
    overrides: PreviewOverrides | None = None,
    evaluator: ExpressionEvaluator | None = None,
    document_styles: Dict[str, Any] | None = None,
    context: Dict[str, Any] | None = None,
) -> str:
    """Render ``blocks`` to an HTML fragment."""
    output = await render_template_with_diagnostics(blocks, data, overrides, evaluator, document_styles, context)
    return output.html
