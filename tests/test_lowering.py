"""Tests for Lua lowering: scopes, phrases, fail-soft gaps."""

from codeblock import (
    REGISTRY,
    BlockGraph,
    BlockRegistry,
    BlockTemplate,
    LuaLowering,
    format_value,
    lower,
    parse_params,
)
from conftest import chain

HEADER = "-- Generated by codeblock\n\n"


def body(text: str) -> list[str]:
    """Lines between the first function header and its closing end."""
    lines = text.splitlines()
    start = next(i for i, ln in enumerate(lines) if ln.startswith("function "))
    stop = lines.index("end", start)
    return lines[start + 1:stop]


def test_empty_graph_is_just_the_header(graph) -> None:
    assert lower(graph) == HEADER


def test_color_then_rect(graph) -> None:
    chain(graph, "onDraw",
          ("setColor", {"r": 255, "g": 0, "b": 0, "a": 255}),
          ("drawRectF", {"x": 0, "y": 0, "w": 10, "h": 10}))
    assert lower(graph) == (
        HEADER
        + "function onDraw()\n"
        + "    screen.setColor(255, 0, 0, 255)\n"
        + "    screen.drawRectF(0, 0, 10, 10)\n"
        + "end\n\n"
    )


def test_if_body_is_indented_one_level_deeper(graph) -> None:
    chain(graph, "onDraw", ("if", {"condition": "x>1"}), "setColor", "end")
    assert body(lower(graph)) == [
        "    if x>1 then",
        "        screen.setColor(255, 255, 255, 255)",
        "    end",
    ]


def test_else_and_elseif_align_with_if(graph) -> None:
    chain(graph, "onDraw",
          ("if", {"condition": "a"}), "drawRect",
          ("elseif", {"condition": "b"}), "drawLine",
          "else", "drawCircle",
          "end", "math")
    assert body(lower(graph)) == [
        "    if a then",
        "        screen.drawRect(0, 0, 10, 10)",
        "    elseif b then",
        "        screen.drawLine(0, 0, 10, 10)",
        "    else",
        "        screen.drawCircle(10, 10, 5)",
        "    end",
        "    x = x + 1",
    ]


def test_loops_open_scopes(graph) -> None:
    chain(graph, "onTick", "for", ("while", {"condition": "busy"}), "varSet", "end", "end")
    assert body(lower(graph)) == [
        "    for i = 1, 10 do",
        "        while busy do",
        "            x = 0",
        "        end",
        "    end",
    ]


def test_unclosed_scope_still_completes(graph) -> None:
    chain(graph, "onDraw", "if", "setColor")
    text = lower(graph)
    assert text.endswith("        screen.setColor(255, 255, 255, 255)\nend\n\n")


def test_extra_end_does_not_go_negative(graph) -> None:
    chain(graph, "onDraw", "end", "end", "drawRect")
    assert lower(graph) == (
        HEADER
        + "function onDraw()\n"
        + "end\n"
        + "end\n"
        + "screen.drawRect(0, 0, 10, 10)\n"
        + "end\n\n"
    )


def test_click_detect_lowers_to_touch_guard(graph) -> None:
    chain(graph, "onDraw", ("clickDetect", {"x": 10, "y": "20", "w": 30, "h": 5.5}), "drawRect", "end")
    assert body(lower(graph)) == [
        "    if input.getBool(1) and input.getNumber(3) > 10 and input.getNumber(3) < 40"
        " and input.getNumber(4) > 20 and input.getNumber(4) < 25 then",
        "        screen.drawRect(0, 0, 10, 10)",
        "    end",
    ]


def test_named_function_root(graph) -> None:
    chain(graph, ("function", {"name": "drawButton", "args": "x, y"}), "drawRect")
    assert lower(graph).startswith(HEADER + "function drawButton(x, y)\n")


def test_draw_text_is_quoted(graph) -> None:
    chain(graph, "onDraw", ("drawText", {"x": 1, "y": 2, "text": 'say "hi"'}))
    assert body(lower(graph)) == ['    screen.drawText(1, 2, "say \\"hi\\"")']


def test_roots_in_graph_order_and_loose_blocks_skipped(graph) -> None:
    graph.create("onTick", 0, 0)
    graph.create("setColor", 500, 500)
    graph.create("isPressed", 600, 600)
    graph.create("onDraw", 300, 0)
    assert lower(graph) == HEADER + "function onTick()\nend\n\nfunction onDraw()\nend\n\n"


def test_missing_parameter_degrades_to_comment(graph) -> None:
    _, bad, _ = chain(graph, "onDraw", "setColor", "drawRect")
    graph.set_params(bad.id, {"r": 1})
    assert body(lower(graph)) == [
        "    -- cannot lower setColor: missing parameter 'g'",
        "    screen.drawRect(0, 0, 10, 10)",
    ]


def test_non_numeric_click_detect_degrades(graph) -> None:
    chain(graph, "onDraw", ("clickDetect", {"x": "left", "y": 0, "w": 1, "h": 1}), "drawRect")
    lines = body(lower(graph))
    assert lines[0].startswith("    -- cannot lower clickDetect")
    assert lines[1] == "    screen.drawRect(0, 0, 10, 10)"


def test_infinite_click_detect_degrades(graph) -> None:
    params = parse_params('{"x": 1e400, "y": 0, "w": 1, "h": 1}')
    chain(graph, "onDraw", ("clickDetect", params), "drawRect")
    lines = body(lower(graph))
    assert lines[0].startswith("    -- cannot lower clickDetect")
    assert lines[1] == "    screen.drawRect(0, 0, 10, 10)"


def test_unknown_type_degrades_to_comment(settings) -> None:
    registry = BlockRegistry(REGISTRY)
    registry.register(BlockTemplate("beep", "command", "beep", "beep()"))
    graph = BlockGraph(registry, settings)
    chain(graph, "onDraw", "beep", "drawRect")

    assert body(lower(graph)) == ["    beep()", "    screen.drawRect(0, 0, 10, 10)"]
    assert body(LuaLowering(graph, REGISTRY).lower()) == [
        "    -- unknown block beep",
        "    screen.drawRect(0, 0, 10, 10)",
    ]


def test_lowering_is_idempotent(graph) -> None:
    chain(graph, "onDraw", "if", "setColor", "else", "drawRect", "end")
    chain(graph, "onTick", "varSet", x=400)
    first = lower(graph)
    assert lower(graph) == first
    assert lower(graph) == first


def test_format_value() -> None:
    assert format_value(10.0) == "10"
    assert format_value(2.5) == "2.5"
    assert format_value(True) == "true"
    assert format_value("x>1") == "x>1"
