"""Tests for BlockGraph: creation, params, removal and chain traversal."""

import pytest

from codeblock import (
    REGISTRY,
    InvalidParameters,
    NotFound,
    UnknownTypeError,
    parse_params,
)
from conftest import chain


def test_catalog_order_and_size() -> None:
    ids = REGISTRY.type_ids()
    assert len(ids) == len(REGISTRY) == 19
    assert ids[:3] == ["onDraw", "onTick", "function"]
    assert ids[-1] == "math"


def test_create_copies_defaults(graph) -> None:
    a = graph.create("setColor", 0, 0)
    b = graph.create("setColor", 0, 0)
    a.params["r"] = 0
    assert b.params["r"] == 255
    assert REGISTRY.lookup("setColor").defaults["r"] == 255
    assert a.id != b.id
    assert a.next is None


def test_create_unknown_type_leaves_graph_untouched(graph) -> None:
    graph.create("onDraw", 0, 0)
    with pytest.raises(UnknownTypeError):
        graph.create("teleport", 0, 0)
    assert len(graph) == 1


def test_block_geometry_follows_settings(graph, settings) -> None:
    block = graph.create("drawRectF", 0, 0)
    assert block.height == settings.block_height
    assert block.width >= settings.block_min_width


def test_move_updates_position_only(graph) -> None:
    a, b = chain(graph, "onDraw", "setColor")
    graph.move(b.id, 300, 400)
    assert (b.x, b.y) == (300, 400)
    assert a.next == b.id


def test_move_missing_block(graph) -> None:
    with pytest.raises(NotFound):
        graph.move(99, 0, 0)


def test_set_params_replaces_wholesale(graph) -> None:
    block = graph.create("setColor", 0, 0)
    graph.set_params(block.id, {"r": 1, "g": 2.5, "flag": True})
    assert block.params == {"r": 1, "g": 2.5, "flag": "true"}


@pytest.mark.parametrize("bad", [
    [1, 2, 3],
    "r=1",
    {"r": [1, 2]},
    {"r": {"nested": 1}},
    {"r": None},
    {1: 2},
])
def test_set_params_rejects_wrong_shape(graph, bad) -> None:
    block = graph.create("setColor", 0, 0)
    before = dict(block.params)
    with pytest.raises(InvalidParameters):
        graph.set_params(block.id, bad)
    assert block.params == before


def test_parse_params_json() -> None:
    assert parse_params('{"x": 1, "text": "hi"}') == {"x": 1, "text": "hi"}
    with pytest.raises(InvalidParameters):
        parse_params("{x: 1")
    with pytest.raises(InvalidParameters):
        parse_params("[1, 2]")


def test_remove_clears_incoming_links(graph) -> None:
    blocks = chain(graph, "onDraw", "setColor", "drawRect", "end")
    for victim in (blocks[2], blocks[1]):
        graph.remove(victim.id)
        assert all(b.next != victim.id for b in graph)
    assert blocks[0].next is None
    assert blocks[3].id in graph


def test_remove_missing_block(graph) -> None:
    with pytest.raises(NotFound):
        graph.remove(42)


def test_disconnect_incoming(graph) -> None:
    a, b = chain(graph, "onDraw", "setColor")
    graph.disconnect_incoming(b.id)
    assert a.next is None
    graph.disconnect_incoming(b.id)
    graph.disconnect_incoming(12345)


def test_chain_from_follows_links(graph) -> None:
    blocks = chain(graph, "onDraw", "if", "setColor", "end")
    assert [b.id for b in graph.chain_from(blocks[0].id)] == [b.id for b in blocks]
    assert [b.id for b in graph.chain_from(blocks[2].id)] == [blocks[2].id, blocks[3].id]


def test_chain_from_stops_at_removed_target(graph) -> None:
    a, b, c = chain(graph, "onDraw", "setColor", "drawRect")
    graph._blocks.pop(c.id)
    assert [x.id for x in graph.chain_from(a.id)] == [a.id, b.id]


def test_chain_from_never_revisits(graph) -> None:
    a, b = chain(graph, "setColor", "drawRect")
    graph.link(b.id, a.id)
    assert [x.id for x in graph.chain_from(a.id)] == [a.id, b.id]


def test_roots_are_event_blocks(graph) -> None:
    draw = graph.create("onDraw", 0, 0)
    graph.create("setColor", 0, 0)
    graph.create("isPressed", 0, 0)
    tick = graph.create("onTick", 0, 0)
    assert [b.id for b in graph.roots()] == [draw.id, tick.id]


def test_shift_chain_stacks_blocks(graph) -> None:
    blocks = chain(graph, "setColor", "drawRect", "drawLine", x=7, y=3)
    graph.shift_chain(blocks[0].id, 100, 200)
    assert [(b.x, b.y) for b in blocks] == [(100, 200), (100, 240), (100, 280)]
