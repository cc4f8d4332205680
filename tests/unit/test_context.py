"""Tests for input mapping resolution."""

from datachoreo.context import MISSING, Resolved, resolve_mapping, resolve_path


CONTEXT = {
    "trigger": {"order": {"id": 42, "email": "a@b.co", "items": [{"sku": "A1"}, {"sku": "B2"}]}},
    "lookup": {"found": None, "total": 19.5},
}


def test_resolve_path_walks_dicts_and_lists():
    assert resolve_path("trigger.order.id", CONTEXT) == Resolved(42)
    assert resolve_path("trigger.order.items.1.sku", CONTEXT) == Resolved("B2")
    assert resolve_path("lookup.found", CONTEXT) == Resolved(None)


def test_resolve_path_missing():
    assert resolve_path("trigger.order.nope", CONTEXT) is MISSING
    assert resolve_path("trigger.order.items.9.sku", CONTEXT) is MISSING
    assert resolve_path("trigger.order.items.x", CONTEXT) is MISSING
    assert resolve_path("trigger..order", CONTEXT) is MISSING
    assert not MISSING


def test_whole_token_keeps_type():
    resolved = resolve_mapping(
        {"id": "{{ trigger.order.id }}", "items": "{{trigger.order.items}}", "total": "{{lookup.total}}"},
        CONTEXT,
    )
    assert resolved.params == {
        "id": 42,
        "items": [{"sku": "A1"}, {"sku": "B2"}],
        "total": 19.5,
    }
    assert resolved.complete


def test_embedded_tokens_interpolate():
    resolved = resolve_mapping({"subject": "Order {{trigger.order.id}} for {{ trigger.order.email }}"}, CONTEXT)
    assert resolved.params["subject"] == "Order 42 for a@b.co"


def test_nested_mappings_and_lists_recurse():
    resolved = resolve_mapping(
        {"body": {"lines": ["{{trigger.order.items.0.sku}}", "fixed"], "n": 3}},
        CONTEXT,
    )
    assert resolved.params == {"body": {"lines": ["A1", "fixed"], "n": 3}}


def test_missing_paths_are_recorded():
    resolved = resolve_mapping(
        {"a": "{{trigger.nope}}", "b": "x-{{lookup.absent}}-y", "c": "{{lookup.found}}"},
        CONTEXT,
    )
    assert resolved.params == {"a": None, "b": "x--y", "c": None}
    assert resolved.missing == ["trigger.nope", "lookup.absent"]
    assert not resolved.complete


def test_resolution_does_not_share_context_objects():
    context = {"trigger": {"items": [1, 2]}}
    resolved = resolve_mapping({"items": "{{trigger.items}}"}, context)
    resolved.params["items"].append(3)
    assert context["trigger"]["items"] == [1, 2]
