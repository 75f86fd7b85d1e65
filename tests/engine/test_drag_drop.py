"""Tests for drag/drop queries and drops."""

import itertools
import sys
from pathlib import Path

# Add project root to path (tests/engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from models.schemas import Template
from services.mutation_engine import MutationEngine
from services.template_store import TemplateStore


@pytest.fixture
def engine():
    counter = itertools.count(1)
    return MutationEngine(TemplateStore(Template(id="tpl-1")), id_factory=lambda: f"id-{next(counter)}")


def _root_ids(engine):
    return [b.id for b in engine.template.blocks]


def test_can_drop_into_container(engine):
    container = engine.add_block("container")
    text = engine.add_block("text")
    assert engine.can_drop(text.id, container.id, "inside")
    assert engine.can_drop(text.id, container.id, "before")


def test_cannot_drop_into_self_or_descendant(engine):
    outer = engine.add_block("container")
    inner = engine.add_block("container", parent_id=outer.id)
    assert not engine.can_drop(outer.id, outer.id, "inside")
    assert not engine.can_drop(outer.id, inner.id, "inside")


def test_cannot_drop_into_text(engine):
    text = engine.add_block("text")
    other = engine.add_block("text")
    assert not engine.can_drop(other.id, text.id, "inside")
    assert engine.can_drop(other.id, text.id, "after")


def test_root_only_block_cannot_go_into_cell(engine):
    table = engine.add_block("table")
    pagebreak = engine.add_block("pagebreak")
    assert not engine.can_drop(pagebreak.id, table.rows[0].cells[0].id, "inside")
    assert engine.can_drop(pagebreak.id, None)


def test_drop_zones_list_valid_targets(engine):
    container = engine.add_block("container")
    text = engine.add_block("text")
    zones = engine.drag_drop.get_drop_zones(text.id)
    targets = {(z.target_id, z.position) for z in zones}
    assert (None, "inside") in targets
    assert (container.id, "inside") in targets
    assert (container.id, "before") in targets
    assert (text.id, "inside") not in targets


def test_drop_after_sibling(engine):
    a = engine.add_block("text")
    b = engine.add_block("text")
    c = engine.add_block("text")
    assert engine.drag_drop.drop(a.id, c.id, position="after")
    assert _root_ids(engine) == [b.id, c.id, a.id]


def test_drop_before_sibling(engine):
    a = engine.add_block("text")
    b = engine.add_block("text")
    c = engine.add_block("text")
    assert engine.drag_drop.drop(c.id, a.id, position="before")
    assert _root_ids(engine) == [c.id, a.id, b.id]


def test_drop_inside_appends(engine):
    container = engine.add_block("container")
    first = engine.add_block("text", parent_id=container.id)
    text = engine.add_block("text")
    assert engine.drag_drop.drop(text.id, container.id)
    assert [b.id for b in engine.find_block(container.id).children] == [first.id, text.id]


def test_invalid_drop_changes_nothing(engine):
    text = engine.add_block("text")
    other = engine.add_block("text")
    assert not engine.drag_drop.drop(other.id, text.id)
    assert _root_ids(engine) == [text.id, other.id]
