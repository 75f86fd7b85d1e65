"""Drag/drop port.

Lets an external drag-and-drop adapter ask whether a drop is allowed before
calling ``move_block``. Answers are advisory; the mutation engine checks
every move again on its own.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Literal, Optional

from services import block_tree

if TYPE_CHECKING:
    from services.mutation_engine import MutationEngine

logger = logging.getLogger(__name__)


DropPosition = Literal["before", "after", "inside"]


@dataclass
class DropZone:
    target_id: Optional[str]  # None is the root list
    position: DropPosition
    target_type: Optional[str]


class DragDropService:
    def __init__(self, engine: "MutationEngine"):
        self._engine = engine

    def can_drag(self, block_id: str) -> bool:
        block = self._engine.find_block(block_id)
        if block is None:
            return False
        definition = self._engine.registry.get_definition(block.type)
        return definition is not None and definition.constraints.can_be_dragged

    def can_drop(self, dragged_id: str, target_id: Optional[str], position: DropPosition = "inside") -> bool:
        """Whether ``dragged_id`` may be dropped relative to ``target_id``.

        ``inside`` targets a block, column or cell container; ``before`` and
        ``after`` target a sibling block. A None target is the root list.
        """
        if not self.can_drag(dragged_id) or dragged_id == target_id:
            return False

        blocks = self._engine.template.blocks
        dragged = block_tree.find_block(blocks, dragged_id)

        if target_id is None:
            container = block_tree.find_container(blocks, None)
        elif position == "inside":
            container = block_tree.find_container(blocks, target_id)
        else:
            found = block_tree.locate(blocks, target_id)
            container = found[0] if found is not None else None

        if container is None:
            return False
        if container.id is not None and block_tree.is_self_or_descendant(blocks, dragged_id, container.id):
            return False

        source = block_tree.locate(blocks, dragged_id)
        adding = source is None or source[0].id != container.id
        return self._engine.registry.check_placement(dragged.type, container, adding=adding) is None

    def get_drop_zones(self, dragged_id: str) -> List[DropZone]:
        """Every place ``dragged_id`` could currently be dropped, in document order."""
        zones: List[DropZone] = []
        blocks = self._engine.template.blocks

        if self.can_drop(dragged_id, None, "inside"):
            zones.append(DropZone(None, "inside", None))

        for block in block_tree.walk(blocks):
            for container in block_tree.iter_containers(block):
                if self.can_drop(dragged_id, container.id, "inside"):
                    zones.append(DropZone(container.id, "inside", container.parent_type))
            for position in ("before", "after"):
                if self.can_drop(dragged_id, block.id, position):
                    zones.append(DropZone(block.id, position, block.type))

        return zones

    def drop(
        self,
        dragged_id: str,
        target_id: Optional[str],
        index: int = -1,
        position: DropPosition = "inside",
    ) -> bool:
        """Perform a drop by translating it into ``move_block``."""
        if not self.can_drop(dragged_id, target_id, position):
            logger.debug(f"[DND] Invalid drop of {dragged_id} {position} {target_id}")
            return False

        blocks = self._engine.template.blocks
        if position == "inside" or target_id is None:
            if index < 0:
                index = block_tree.child_count(blocks, target_id)
                source = block_tree.locate(blocks, dragged_id)
                if source is not None and source[0].id == target_id:
                    index -= 1
            return self._engine.move_block(dragged_id, target_id, index)

        container, target_index = block_tree.locate(blocks, target_id)
        index = target_index + 1 if position == "after" else target_index

        # Indices after the dragged block's old slot shrink once it is removed
        source_container, source_index = block_tree.locate(blocks, dragged_id)
        if source_container.id == container.id and source_index < index:
            index -= 1

        return self._engine.move_block(dragged_id, container.id, index)
