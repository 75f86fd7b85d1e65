"""Tree store: owner of the live template and preview state.

The store hands out deep copies only. Writes go through ``commit_template``
(used by the mutation engine) or the preview setters, and every write
notifies subscribers with a snapshot of the new state.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal

from models.schemas import PreviewOverrides, Template

logger = logging.getLogger(__name__)


ChangeKind = Literal["template", "test_data", "overrides", "selection"]


@dataclass
class StoreChange:
    """What changed, plus an immutable snapshot of the state after the change."""
    kind: ChangeKind
    template: Template
    test_data: Dict[str, Any]
    overrides: PreviewOverrides
    selected_block_id: str | None


Listener = Callable[[StoreChange], None]


class TemplateStore:
    def __init__(
        self,
        template: Template,
        test_data: Dict[str, Any] | None = None,
        overrides: PreviewOverrides | None = None,
    ):
        self._template = template.model_copy(deep=True)
        self._test_data: Dict[str, Any] = copy.deepcopy(test_data) if test_data is not None else {}
        self._overrides = overrides.model_copy(deep=True) if overrides is not None else PreviewOverrides()
        self._selected_block_id: str | None = None
        self._listeners: List[Listener] = []

        if test_data is None and self._template.data_examples:
            self._test_data = copy.deepcopy(self._template.data_examples[0].data)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_template(self) -> Template:
        return self._template.model_copy(deep=True)

    def get_test_data(self) -> Dict[str, Any]:
        return copy.deepcopy(self._test_data)

    def get_overrides(self) -> PreviewOverrides:
        return self._overrides.model_copy(deep=True)

    @property
    def selected_block_id(self) -> str | None:
        return self._selected_block_id

    def snapshot(self, kind: ChangeKind = "template") -> StoreChange:
        return StoreChange(
            kind=kind,
            template=self.get_template(),
            test_data=self.get_test_data(),
            overrides=self.get_overrides(),
            selected_block_id=self._selected_block_id,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def commit_template(self, template: Template) -> None:
        """Replace the live template. Only the mutation engine calls this."""
        self._template = template.model_copy(deep=True)
        self._notify("template")

    def set_test_data(self, data: Dict[str, Any]) -> None:
        self._test_data = copy.deepcopy(data)
        self._notify("test_data")

    def select_data_example(self, example_id: str) -> bool:
        """Use a template data example as the preview test data."""
        for example in self._template.data_examples:
            if example.id == example_id:
                self.set_test_data(example.data)
                return True
        logger.debug(f"[STORE] Data example not found: {example_id}")
        return False

    def set_overrides(self, overrides: PreviewOverrides) -> None:
        self._overrides = overrides.model_copy(deep=True)
        self._notify("overrides")

    def set_conditional_override(self, block_id: str, mode: Literal["data", "show", "hide"]) -> None:
        overrides = self.get_overrides()
        overrides.conditionals[block_id] = mode
        self.set_overrides(overrides)

    def set_loop_override(self, block_id: str, count: int | Literal["data"]) -> None:
        overrides = self.get_overrides()
        overrides.loops[block_id] = count
        self.set_overrides(overrides)

    def select_block(self, block_id: str | None) -> None:
        if block_id == self._selected_block_id:
            return
        self._selected_block_id = block_id
        self._notify("selection")

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: ChangeKind) -> None:
        if not self._listeners:
            return
        change = self.snapshot(kind)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"[STORE] Listener {listener!r} failed on {kind} change: {e}")
