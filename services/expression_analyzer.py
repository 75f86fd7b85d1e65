"""Expression path extraction.

Collects the data paths a template reads: conditional conditions, loop
expressions and expression atoms embedded in text content. Paths are found
by a lexical scan of each expression string, so the scan works without a
full expression grammar.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from models.schemas import Block, BlockType

logger = logging.getLogger(__name__)


# identifier, optional [index], then any number of .identifier[index] segments
_PATH_RE = re.compile(
    r"\b([a-zA-Z_][a-zA-Z0-9_]*(?:\s*\[\s*\d*\s*\])?"
    r"(?:\s*\.\s*[a-zA-Z_][a-zA-Z0-9_]*(?:\s*\[\s*\d*\s*\])?)*)"
)
_INDEX_RE = re.compile(r"\[\s*\d+\s*\]")
_ROOT_SPLIT_RE = re.compile(r"[.\[]")
_TRAILING_ARRAY_RE = re.compile(r"\[\]$")
_WHITESPACE_RE = re.compile(r"\s+")

# Node type carrying an inline expression inside TipTap content
EXPRESSION_NODE_TYPE = "expression"


def normalize_array_path(path: str) -> str:
    """Replace numeric indices with ``[]``: ``items[0].price`` -> ``items[].price``."""
    return _INDEX_RE.sub("[]", path)


def extract_paths_from_expression(expression: str, paths: Set[str] | None = None) -> Set[str]:
    """Add every path-like substring of ``expression`` to ``paths``."""
    if paths is None:
        paths = set()
    if not expression or not isinstance(expression, str):
        return paths
    text = expression.strip()
    if not text:
        return paths

    for match in _PATH_RE.finditer(text):
        path = _WHITESPACE_RE.sub("", match.group(1))
        if path:
            paths.add(normalize_array_path(path))
    return paths


def iter_content_expressions(content: Optional[Dict[str, Any]]) -> Iterable[str]:
    """Yield the raw expression of every expression node in TipTap content, in order."""
    if not content or not isinstance(content, dict):
        return
    if content.get("type") == EXPRESSION_NODE_TYPE:
        expression = (content.get("attrs") or {}).get("expression")
        if expression:
            yield expression
    for child in content.get("content") or []:
        yield from iter_content_expressions(child)


def extract_expressions(blocks: List[Block]) -> Set[str]:
    """All normalized expression paths used anywhere in ``blocks``."""
    paths: Set[str] = set()

    def process(block_list: List[Block]) -> None:
        for block in block_list:
            process_block(block)

    def process_block(block: Block) -> None:
        block_type = getattr(block, "type", None)
        if block_type == BlockType.TEXT:
            for expression in iter_content_expressions(block.content):
                extract_paths_from_expression(expression, paths)
        elif block_type == BlockType.CONDITIONAL:
            extract_paths_from_expression(block.condition.raw, paths)
            process(block.children)
        elif block_type == BlockType.LOOP:
            extract_paths_from_expression(block.expression.raw, paths)
            process(block.children)
        elif block_type in (BlockType.CONTAINER, BlockType.PAGEHEADER, BlockType.PAGEFOOTER):
            process(block.children)
        elif block_type == BlockType.COLUMNS:
            for column in block.columns:
                process(column.children)
        elif block_type == BlockType.TABLE:
            for row in block.rows:
                for cell in row.cells:
                    process(cell.children)
        elif block_type == BlockType.PAGEBREAK:
            pass
        else:
            logger.warning(f"[ANALYZE] Unknown block type: {block_type}")

    process(blocks)
    return paths


def get_root_paths(expressions: Iterable[str]) -> Set[str]:
    """First segment of each path: ``customer.name`` -> ``customer``."""
    roots = set()
    for expression in expressions:
        first = _ROOT_SPLIT_RE.split(expression, maxsplit=1)[0]
        if first:
            roots.add(first)
    return roots


def path_matches_schema(path: str, schema_paths: Set[str]) -> bool:
    """Whether an expression path resolves against declared schema paths.

    Besides an exact match, any dotted prefix of ``path`` counts, tested both
    as written and with a trailing ``[]``. This lets ``items.name`` match a
    schema that declares ``items[]``.
    """
    if path in schema_paths:
        return True

    parts = path.split(".")
    for i in range(len(parts), 0, -1):
        partial = ".".join(parts[:i])
        if partial in schema_paths:
            return True
        if _TRAILING_ARRAY_RE.sub("", partial) + "[]" in schema_paths:
            return True
    return False
