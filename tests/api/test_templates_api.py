"""HTTP tests for the templates API."""

import sys
from pathlib import Path

# Add project root to path (tests/api/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def client():
    return TestClient(app)


def _text(block_id, expression):
    return {
        "type": "text",
        "id": block_id,
        "content": {
            "type": "doc",
            "content": [{"type": "paragraph", "content": [{"type": "expression", "attrs": {"expression": expression}}]}],
        },
    }


@pytest.fixture
def template():
    return {
        "id": "tpl-1",
        "name": "Invoice",
        "blocks": [
            _text("t1", "customer.name"),
            {
                "type": "loop",
                "id": "l1",
                "expression": {"raw": "items"},
                "itemAlias": "line",
                "children": [_text("t2", "line.price")],
            },
        ],
        "dataExamples": [{"id": "ex-1", "name": "Default", "data": {"customer": {"name": "Ada"}, "items": [{"price": 5}]}}],
        "schema": {
            "type": "object",
            "properties": {
                "customer": {"type": "object", "properties": {"name": {"type": "string"}}},
                "items": {"type": "array", "items": {"type": "object", "properties": {"price": {"type": "number"}}}},
            },
        },
    }


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_render_uses_first_example(client, template):
    response = client.post("/templates/render", json={"template": template})
    assert response.status_code == 200
    body = response.json()
    assert "Ada" in body["html"]
    assert ">5</p>" in body["html"]
    assert body["diagnostics"] == []


def test_render_with_data_and_diagnostics(client, template):
    template["blocks"].append(_text("t3", "bad..path"))
    response = client.post("/templates/render", json={"template": template, "data": {"customer": {"name": "Grace"}}})
    body = response.json()
    assert "Grace" in body["html"]
    assert "[Error: bad..path]" in body["html"]
    assert body["diagnostics"][0]["blockId"] == "t3"


def test_render_unknown_example(client, template):
    response = client.post("/templates/render", json={"template": template, "dataExampleId": "nope"})
    assert response.status_code == 404


def test_render_html_page(client, template):
    response = client.post("/templates/render/html", json={"template": template})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert response.text.startswith("<html><body>")


def test_render_rejects_invalid_template(client, template):
    template["blocks"].append(_text("t1", "customer.name"))
    response = client.post("/templates/render", json={"template": template})
    assert response.status_code == 400
    assert response.json()["detail"]["errors"][0]["field"] == "t1"


def test_validate(client, template):
    template["blocks"].append(_text("t9", "shipping.city"))
    response = client.post("/templates/validate", json=template)
    body = response.json()
    assert body["isValid"] is True
    assert "shipping.city" in [w["path"] for w in body["warnings"]]
    assert body["errors"] == []


def test_expressions(client, template):
    body = client.post("/templates/expressions", json=template).json()
    assert body["expressions"] == ["customer.name", "items", "line.price"]
    assert body["roots"] == ["customer", "items", "line"]
    assert body["coverage"]["total"] == 3


def test_schema_impact(client, template):
    new_schema = {"type": "object", "properties": {"customer": {"type": "object"}}}
    body = client.post("/templates/schema-impact", json={"template": template, "schema": new_schema}).json()
    assert [i["path"] for i in body["removed"]] == ["customer.name", "items"]
    assert {i["path"] for i in body["issues"]} == {"items", "line.price"}


def test_migrations(client):
    payload = {
        "schema": {"type": "object", "properties": {"age": {"type": "integer"}}},
        "dataExamples": [{"id": "ex-1", "name": "A", "data": {"age": "41"}}],
        "apply": True,
    }
    body = client.post("/templates/migrations", json=payload).json()
    assert body["compatible"] is False
    assert body["migrations"][0]["suggestedValue"] == 41
    assert body["dataExamples"][0]["data"] == {"age": 41}


def test_infer_schema(client):
    body = client.post("/templates/schema/infer", json={"data": {"name": "Ada"}}).json()
    assert body["properties"] == {"name": {"type": "string"}}


def test_render_table_without_covered_cells(client):
    template = {
        "id": "tpl-2",
        "blocks": [
            {
                "type": "table",
                "id": "tbl",
                "rows": [
                    {
                        "id": "r0",
                        "cells": [
                            {"id": "a", "colspan": 2, "children": [_text("t1", "left")]},
                            {"id": "b", "children": [_text("t2", "right")]},
                        ],
                    },
                    {"id": "r1", "cells": [{"id": "c"}, {"id": "d"}, {"id": "e"}]},
                ],
            }
        ],
    }
    response = client.post("/templates/render", json={"template": template, "data": {"left": "L", "right": "R"}})
    assert response.status_code == 200
    html = response.json()["html"]
    assert ">L</p>" in html and ">R</p>" in html
    assert html.count("<td") == 5
