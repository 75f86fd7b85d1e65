"""Live preview: re-renders the store's template whenever it changes.

Changes are debounced. Each change bumps a generation counter; a render
pass remembers the generation it started for and its result is dropped if
a newer change arrived in the meantime, so a slow pass can never overwrite
a newer one.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Set

from lxml import etree

from services.engine_config import get_engine_settings
from services.evaluators import DirectEvaluator, ExpressionEvaluator
from services.template_renderer import render_template
from services.template_store import StoreChange, TemplateStore

logger = logging.getLogger(__name__)


def render_error_html(error: Exception) -> str:
    el = etree.Element("p", style="color: red;")
    el.text = f"Render error: {error}"
    return etree.tostring(el, method="html", encoding="unicode")


class PreviewService:
    def __init__(
        self,
        store: TemplateStore,
        evaluator: ExpressionEvaluator | None = None,
        debounce_seconds: float | None = None,
        on_render: Callable[[str], None] | None = None,
    ):
        self._store = store
        self._evaluator = evaluator or DirectEvaluator()
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else get_engine_settings().render_debounce_seconds
        )
        self.on_render = on_render

        self._html = ""
        self._generation = 0
        self._rendered_generation = -1
        self._timer: asyncio.Task | None = None
        self._passes: Set[asyncio.Task] = set()
        self._closed = False
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def html(self) -> str:
        return self._html

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_stale(self) -> bool:
        return self._rendered_generation != self._generation

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _on_change(self, change: StoreChange) -> None:
        if self._closed or change.kind == "selection":
            return
        self._generation += 1
        self._schedule()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet: the next render_now()/flush() picks the change up
            logger.debug(f"[PREVIEW] No running loop, generation {self._generation} deferred")
            return
        self._cancel_timer()
        self._timer = loop.create_task(self._debounce())

    async def _debounce(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timer = None
        self._start_pass(self._generation)

    def _start_pass(self, generation: int) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._render_pass(generation))
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)
        return task

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    async def _render_pass(self, generation: int) -> bool:
        snapshot = self._store.snapshot()
        try:
            html = await render_template(
                snapshot.template.blocks,
                snapshot.test_data,
                snapshot.overrides,
                self._evaluator,
                snapshot.template.document_styles,
            )
        except Exception as e:
            logger.error(f"[PREVIEW] Render failed: {e}")
            html = render_error_html(e)

        if self._closed or generation != self._generation:
            logger.debug(f"[PREVIEW] Discarding stale pass {generation} (current {self._generation})")
            return False

        self._html = html
        self._rendered_generation = generation
        if self.on_render is not None:
            try:
                self.on_render(html)
            except Exception as e:
                logger.error(f"[PREVIEW] on_render callback failed: {e}")
        return True

    async def render_now(self) -> str:
        """Render immediately, skipping any pending debounce."""
        self._cancel_timer()
        await self._start_pass(self._generation)
        return self._html

    async def flush(self) -> str:
        """Settle every pending and in-flight pass, then return the current html."""
        if self._timer is not None or self.is_stale:
            await self.render_now()
        if self._passes:
            await asyncio.gather(*list(self._passes), return_exceptions=True)
        return self._html

    def close(self) -> None:
        self._closed = True
        self._unsubscribe()
        self._cancel_timer()
        for task in list(self._passes):
            task.cancel()
        self._passes.clear()
