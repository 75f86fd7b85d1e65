"""Tests for the template store and its subscriptions."""

import sys
from pathlib import Path

# Add project root to path (tests/engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from models.schemas import DataExample, PreviewOverrides, Template, TextBlock
from services.template_store import TemplateStore


@pytest.fixture
def template():
    return Template(
        id="tpl-1",
        blocks=[TextBlock(id="t1")],
        data_examples=[
            DataExample(id="ex-1", name="Default", data={"customer": {"name": "Ada"}}),
            DataExample(id="ex-2", name="Empty", data={}),
        ],
    )


def test_test_data_defaults_to_first_example(template):
    store = TemplateStore(template)
    assert store.get_test_data() == {"customer": {"name": "Ada"}}


def test_explicit_test_data_wins(template):
    store = TemplateStore(template, test_data={"x": 1})
    assert store.get_test_data() == {"x": 1}


def test_reads_are_copies(template):
    store = TemplateStore(template)
    copy = store.get_template()
    copy.blocks.clear()
    assert len(store.get_template().blocks) == 1

    data = store.get_test_data()
    data["customer"]["name"] = "Changed"
    assert store.get_test_data()["customer"]["name"] == "Ada"


def test_subscribe_and_unsubscribe(template):
    store = TemplateStore(template)
    changes = []
    unsubscribe = store.subscribe(changes.append)

    store.commit_template(template.model_copy(update={"name": "Renamed"}))
    store.set_test_data({"a": 1})
    unsubscribe()
    store.set_test_data({"a": 2})

    assert [c.kind for c in changes] == ["template", "test_data"]
    assert changes[0].template.name == "Renamed"
    assert changes[1].test_data == {"a": 1}


def test_select_data_example(template):
    store = TemplateStore(template)
    assert store.select_data_example("ex-2")
    assert store.get_test_data() == {}
    assert not store.select_data_example("missing")


def test_overrides(template):
    store = TemplateStore(template)
    changes = []
    store.subscribe(changes.append)

    store.set_conditional_override("cond-1", "hide")
    store.set_loop_override("loop-1", 3)

    overrides = store.get_overrides()
    assert overrides.conditionals == {"cond-1": "hide"}
    assert overrides.loops == {"loop-1": 3}
    assert [c.kind for c in changes] == ["overrides", "overrides"]

    store.set_overrides(PreviewOverrides())
    assert store.get_overrides().conditionals == {}


def test_selection_notifies_once(template):
    store = TemplateStore(template)
    changes = []
    store.subscribe(changes.append)
    store.select_block("t1")
    store.select_block("t1")
    assert [c.kind for c in changes] == ["selection"]
    assert store.selected_block_id == "t1"


def test_failing_listener_does_not_block_others(template):
    store = TemplateStore(template)
    seen = []

    def broken(change):
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(seen.append)
    store.set_test_data({})
    assert len(seen) == 1
