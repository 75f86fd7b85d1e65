"""Pure helpers for walking and editing nested block lists.

Blocks hold children in three kinds of containers: a block's own
``children`` list, a column of a columns block, and a cell of a table.
A container is addressed by the id of its owner (block, column or cell);
``None`` addresses the root list.

Functions that edit operate in place on the lists they are given. Callers
work on a deep copy of the template and commit it only when the edit
succeeds.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from models.schemas import CHILD_BEARING_TYPES, Block, BlockType

# Parent types reported for column and cell containers
ROOT_TYPE = "root"
COLUMN_CONTAINER_TYPE = BlockType.COLUMNS.value
CELL_CONTAINER_TYPE = BlockType.TABLE.value


@dataclass
class ChildContainer:
    """A list of child blocks and what owns it."""
    id: Optional[str]
    parent_type: str  # "root", a block type, "columns" or "table"
    children: List[Block]
    owner: Optional[Block] = None

    @property
    def is_slot(self) -> bool:
        """True for a column or table cell, False for root and block children."""
        return self.owner is not None and self.id != self.owner.id


def has_children(block: Block) -> bool:
    return block.type in CHILD_BEARING_TYPES


def iter_containers(block: Block) -> Iterator[ChildContainer]:
    """Yield every child container directly owned by ``block``."""
    if has_children(block):
        yield ChildContainer(block.id, block.type, block.children, block)
    elif block.type == BlockType.COLUMNS:
        for column in block.columns:
            yield ChildContainer(column.id, COLUMN_CONTAINER_TYPE, column.children, block)
    elif block.type == BlockType.TABLE:
        for row in block.rows:
            for cell in row.cells:
                yield ChildContainer(cell.id, CELL_CONTAINER_TYPE, cell.children, block)


def walk(blocks: List[Block]) -> Iterator[Block]:
    """Depth-first, document-order iteration over every block."""
    for block in blocks:
        yield block
        for container in iter_containers(block):
            yield from walk(container.children)


def find_block(blocks: List[Block], block_id: str) -> Optional[Block]:
    for block in walk(blocks):
        if block.id == block_id:
            return block
    return None


def find_container(blocks: List[Block], container_id: Optional[str]) -> Optional[ChildContainer]:
    """Find the container addressed by ``container_id``.

    Returns None for an unknown id and for a block that cannot hold
    children directly (text, columns, table, pagebreak).
    """
    if container_id is None:
        return ChildContainer(None, ROOT_TYPE, blocks)
    for block in walk(blocks):
        for container in iter_containers(block):
            if container.id == container_id:
                return container
    return None


def locate(blocks: List[Block], block_id: str) -> Optional[Tuple[ChildContainer, int]]:
    """Return the container holding ``block_id`` and the block's index in it."""
    for idx, block in enumerate(blocks):
        if block.id == block_id:
            return ChildContainer(None, ROOT_TYPE, blocks), idx
    for block in walk(blocks):
        for container in iter_containers(block):
            for idx, child in enumerate(container.children):
                if child.id == block_id:
                    return container, idx
    return None


def find_parent(blocks: List[Block], block_id: str) -> Optional[Block]:
    """The block that owns ``block_id``'s container, or None at root level."""
    found = locate(blocks, block_id)
    if found is None:
        return None
    return found[0].owner


def parent_index(blocks: List[Block]) -> Dict[str, Optional[str]]:
    """Map every block id and container id to the id of the block above it."""
    parents: Dict[str, Optional[str]] = {}

    def visit(children: List[Block], parent_id: Optional[str]) -> None:
        for block in children:
            parents[block.id] = parent_id
            for container in iter_containers(block):
                if container.id != block.id:
                    # Column and cell ids resolve to their owning block
                    parents[container.id] = block.id
                visit(container.children, block.id)

    visit(blocks, None)
    return parents


def is_self_or_descendant(blocks: List[Block], ancestor_id: str, target_id: Optional[str]) -> bool:
    """True when ``target_id`` (a block or container id) is ``ancestor_id`` or lies below it.

    Walks from the target up to the root.
    """
    parents = parent_index(blocks)
    current = target_id
    seen = set()
    while current is not None and current not in seen:
        if current == ancestor_id:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


def subtree_ids(block: Block) -> List[str]:
    return [b.id for b in walk([block])]


def child_count(blocks: List[Block], container_id: Optional[str]) -> int:
    container = find_container(blocks, container_id)
    return len(container.children) if container is not None else 0


def insert_block(blocks: List[Block], block: Block, container_id: Optional[str], index: Optional[int] = None) -> bool:
    container = find_container(blocks, container_id)
    if container is None:
        return False
    if index is None or index < 0 or index > len(container.children):
        index = len(container.children)
    container.children.insert(index, block)
    return True


def remove_block(blocks: List[Block], block_id: str) -> Optional[Block]:
    """Detach and return the subtree rooted at ``block_id``."""
    found = locate(blocks, block_id)
    if found is None:
        return None
    container, idx = found
    return container.children.pop(idx)


def replace_block(blocks: List[Block], block_id: str, new_block: Block) -> bool:
    found = locate(blocks, block_id)
    if found is None:
        return False
    container, idx = found
    container.children[idx] = new_block
    return True
