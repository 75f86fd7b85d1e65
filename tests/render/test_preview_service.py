"""Tests for the debounced live preview."""

import asyncio
import sys
from pathlib import Path

# Add project root to path (tests/render/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from models.schemas import EvaluationResult, Template, TextBlock
from services.mutation_engine import MutationEngine
from services.preview_service import PreviewService
from services.template_store import TemplateStore


def _template(expression="value"):
    return Template(
        id="tpl",
        blocks=[
            TextBlock(
                id="t1",
                content={
                    "type": "doc",
                    "content": [
                        {"type": "paragraph", "content": [{"type": "expression", "attrs": {"expression": expression}}]}
                    ],
                },
            )
        ],
    )


class SlowFirstEvaluator:
    """First call is slow; later calls answer immediately."""

    def __init__(self, delay=0.1):
        self.delay = delay
        self.calls = 0

    async def evaluate(self, expression, context):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(self.delay)
        return EvaluationResult(success=True, value=context.get(expression))


def test_changes_are_debounced():
    async def scenario():
        store = TemplateStore(Template(id="tpl"))
        engine = MutationEngine(store)
        renders = []
        service = PreviewService(store, debounce_seconds=0.02, on_render=renders.append)

        for _ in range(3):
            engine.add_block("pagebreak")
        await asyncio.sleep(0.1)
        service.close()
        return renders

    renders = asyncio.run(scenario())
    assert len(renders) == 1
    assert renders[0].count('class="page-break"') == 3


def test_stale_pass_is_discarded():
    async def scenario():
        store = TemplateStore(_template(), test_data={"value": "first"})
        renders = []
        service = PreviewService(store, SlowFirstEvaluator(), debounce_seconds=0, on_render=renders.append)

        store.set_test_data({"value": "old"})
        await asyncio.sleep(0.02)  # slow pass for "old" is now in flight
        store.set_test_data({"value": "new"})
        html = await service.flush()
        service.close()
        return html, renders

    html, renders = asyncio.run(scenario())
    assert "new" in html
    assert len(renders) == 1
    assert "old" not in renders[0]


def test_selection_does_not_rerender():
    store = TemplateStore(_template())
    service = PreviewService(store)
    store.select_block("t1")
    assert service.generation == 0
    service.close()


def test_render_without_running_loop():
    store = TemplateStore(_template(), test_data={"value": "hello"})
    service = PreviewService(store)
    store.set_test_data({"value": "later"})
    html = asyncio.run(service.flush())
    assert "later" in html
    assert not service.is_stale


def test_render_errors_are_visible():
    template = Template(
        id="tpl",
        blocks=[TextBlock(id="t1", content={"type": "doc", "content": [{"type": "expression", "attrs": "broken"}]})],
    )
    service = PreviewService(TemplateStore(template))
    html = asyncio.run(service.render_now())
    assert html.startswith('<p style="color: red;">Render error:')


def test_close_stops_updates():
    store = TemplateStore(_template())
    service = PreviewService(store)
    service.close()
    store.set_test_data({"value": "ignored"})
    assert service.generation == 0
