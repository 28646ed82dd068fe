#!/usr/bin/env python3
"""codeblock: visual block editor for Stormworks Lua screen scripts

Blocks snap together into chains; every chain that starts at an event block
is lowered to Lua source which the editor shows live.  Built with Textual.

Usage:
    codeblock edit [PROJECT]        open the terminal editor
    codeblock lower PROJECT         print the Lua for a saved project
    codeblock import SHAPES -o OUT  turn a canvas drawing into blocks
    codeblock types                 list the block catalog

Keys (editor):
    a           Add mode (click the canvas to place a block)
    [ / ]       Previous / next block type
    e           Edit parameters of the selected block
    Delete/d    Delete selected block
    w           Save project
    x           Clear canvas
    Arrow keys  Pan canvas
    q           Quit

Mouse:
    Click       Select block
    Drag        Move block, release near a block's bottom edge to snap
    Right click Edit parameters
    Drop on the bottom row deletes the block
"""

from __future__ import annotations

import copy
import itertools
import json
import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union

import click
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from textual.app import App, ComposeResult
from textual.screen import ModalScreen
from textual.widget import Widget
from textual.widgets import Static, Input, Button, Label, Footer
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.strip import Strip
from textual.binding import Binding
from textual.logging import TextualHandler
from textual import events, on

from rich.console import Console
from rich.logging import RichHandler
from rich.segment import Segment
from rich.style import Style
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

__version__ = "0.1.0"

log = logging.getLogger("codeblock")


# ═══════════════════════════ SETTINGS ═══════════════════════════

class CodeblockSettings(BaseSettings):
    """Editor configuration, read from CODEBLOCK_* variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="CODEBLOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    snap_radius: float = Field(default=20.0, description="Max distance for a snap, world units")
    block_height: float = Field(default=40.0, description="Height of every block, world units")
    block_min_width: float = Field(default=200.0, description="Narrowest block, world units")
    char_width: float = Field(default=8.0, description="Width per label character, world units")
    indent: str = Field(default="    ", description="One level of Lua indentation")
    header: str = Field(default="-- Generated by codeblock", description="First line of the output")
    origin_x: float = Field(default=50.0, description="Where the first root block is placed")
    origin_y: float = Field(default=50.0)
    project_file: str = Field(default="codeblock_project.json", description="Default save target")
    cell_width: float = Field(default=10.0, description="World units per terminal column")
    rows_per_block: int = Field(default=3, ge=1, description="Terminal rows per block")
    log_level: str = Field(default="INFO")

    @property
    def row_height(self) -> float:
        return self.block_height / self.rows_per_block


@lru_cache(maxsize=1)
def get_settings() -> CodeblockSettings:
    return CodeblockSettings()


# ═══════════════════════════ ERRORS ═══════════════════════════

class CodeblockError(Exception):
    """Base class for everything the editor core raises."""


class UnknownTypeError(CodeblockError, KeyError):
    def __init__(self, type_id: str):
        super().__init__(type_id)
        self.type_id = type_id

    def __str__(self) -> str:
        return f"unknown block type {self.type_id!r}"


class NotFound(CodeblockError, KeyError):
    def __init__(self, block_id: Any):
        super().__init__(block_id)
        self.block_id = block_id

    def __str__(self) -> str:
        return f"no block with id {self.block_id!r}"


class InvalidParameters(CodeblockError, ValueError):
    """A parameter edit (or a saved record) did not validate."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_validation(cls, exc: ValidationError, what: str = "parameters") -> InvalidParameters:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        msg = first.get("msg", "invalid value")
        detail = f"{loc}: {msg}" if loc else msg
        return cls(f"invalid {what} ({detail})", exc.errors())


class LoweringGap(CodeblockError):
    """A single block could not be lowered; the pass carries on without it."""


# ═══════════════════════════ BLOCK REGISTRY ═══════════════════════════

Primitive = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
Params = dict[str, Union[int, float, str]]

_PARAMS_ADAPTER = TypeAdapter(dict[StrictStr, Primitive])


@dataclass(frozen=True)
class BlockTemplate:
    type_id: str
    kind: str
    label: str
    pattern: str
    accepts_above: bool = True
    accepts_below: bool = True
    opens_scope: bool = False
    closes_scope: bool = False
    defaults: Mapping[str, Union[int, float, str]] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        """Chain heads: nothing may snap above them, something may below."""
        return not self.accepts_above and self.accepts_below


class BlockRegistry:
    """Catalog of block templates keyed by type id."""

    def __init__(self, templates: Iterable[BlockTemplate] = ()) -> None:
        self._templates: dict[str, BlockTemplate] = {}
        for t in templates:
            self.register(t)

    def register(self, template: BlockTemplate) -> None:
        if not template.type_id or not template.type_id.strip():
            raise ValueError("type_id must be non-empty")
        self._templates[template.type_id] = template

    def lookup(self, type_id: str) -> BlockTemplate:
        try:
            return self._templates[type_id]
        except KeyError:
            raise UnknownTypeError(type_id) from None

    def type_ids(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._templates

    def __iter__(self) -> Iterator[BlockTemplate]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


def _event(type_id: str, pattern: str, **defaults: Any) -> BlockTemplate:
    return BlockTemplate(type_id, "event", pattern, pattern,
                         accepts_above=False, defaults=defaults)


def _command(type_id: str, label: str, pattern: str, **defaults: Any) -> BlockTemplate:
    return BlockTemplate(type_id, "command", label, pattern, defaults=defaults)


def _wrapper(type_id: str, label: str, pattern: str, closes: bool = False,
             **defaults: Any) -> BlockTemplate:
    return BlockTemplate(type_id, "wrapper", label, pattern, opens_scope=True,
                         closes_scope=closes, defaults=defaults)


REGISTRY = BlockRegistry([
    # Events
    _event("onDraw", "function onDraw()"),
    _event("onTick", "function onTick()"),
    _event("function", "function {name}({args})", name="update", args=""),

    # Drawing
    _command("setColor", "screen.setColor(r, g, b, a)",
             "screen.setColor({r}, {g}, {b}, {a})", r=255, g=255, b=255, a=255),
    _command("drawRect", "screen.drawRect(x, y, w, h)",
             "screen.drawRect({x}, {y}, {w}, {h})", x=0, y=0, w=10, h=10),
    _command("drawRectF", "screen.drawRectF(x, y, w, h)",
             "screen.drawRectF({x}, {y}, {w}, {h})", x=0, y=0, w=10, h=10),
    _command("drawLine", "screen.drawLine(x1, y1, x2, y2)",
             "screen.drawLine({x1}, {y1}, {x2}, {y2})", x1=0, y1=0, x2=10, y2=10),
    _command("drawCircle", "screen.drawCircle(x, y, r)",
             "screen.drawCircle({x}, {y}, {r})", x=10, y=10, r=5),
    _command("drawText", "screen.drawText(x, y, text)",
             'screen.drawText({x}, {y}, "{text}")', x=0, y=0, text="Hello"),

    # Logic
    _wrapper("if", "if (condition) then", "if {condition} then", condition="true"),
    _wrapper("elseif", "elseif (condition) then", "elseif {condition} then",
             closes=True, condition="true"),
    _wrapper("else", "else", "else", closes=True),
    _wrapper("while", "while (condition) do", "while {condition} do", condition="true"),
    _wrapper("for", "for var = start, stop do", "for {var} = {start}, {stop} do",
             var="i", start=1, stop=10),
    BlockTemplate("end", "terminator", "end", "end", closes_scope=True),

    # Input
    BlockTemplate("isPressed", "value", "input.getBool(ch)", "input.getBool({ch})",
                  accepts_above=False, accepts_below=False, defaults={"ch": 1}),
    BlockTemplate("clickDetect", "sugar", "Click Detect (x,y,w,h)", "",
                  opens_scope=True, defaults={"x": 0, "y": 0, "w": 32, "h": 32}),

    # Variables
    _command("varSet", "var = value", "{name} = {val}", name="x", val="0"),
    _command("math", "math operation", "{op}", op="x = x + 1"),
])


# ═══════════════════════════ BLOCK GRAPH ═══════════════════════════

def validate_params(params: Any) -> Params:
    """Check a flat name -> primitive mapping; booleans come back as "true"/"false"."""
    try:
        checked = _PARAMS_ADAPTER.validate_python(params)
    except ValidationError as exc:
        raise InvalidParameters.from_validation(exc) from None
    return {k: ("true" if v else "false") if isinstance(v, bool) else v
            for k, v in checked.items()}


def parse_params(text: str) -> Params:
    """Parse the JSON typed into the parameter dialog."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidParameters(f"invalid JSON: {exc.msg} at column {exc.colno}") from None
    return validate_params(raw)


@dataclass
class BlockInstance:
    id: int
    type_id: str
    x: float
    y: float
    params: Params = field(default_factory=dict)
    next: Optional[int] = None
    width: float = 200.0
    height: float = 40.0


class BlockGraph:
    """Arena of block instances; chains are forward links by id."""

    def __init__(self, registry: Optional[BlockRegistry] = None,
                 settings: Optional[CodeblockSettings] = None) -> None:
        self.registry = registry or REGISTRY
        self.settings = settings or get_settings()
        self._blocks: dict[int, BlockInstance] = {}
        self._ids = itertools.count(1)

    # ── access ──

    def __iter__(self) -> Iterator[BlockInstance]:
        return iter(list(self._blocks.values()))

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, block_id: object) -> bool:
        return block_id in self._blocks

    def get(self, block_id: int) -> BlockInstance:
        try:
            return self._blocks[block_id]
        except KeyError:
            raise NotFound(block_id) from None

    def find(self, block_id: Optional[int]) -> Optional[BlockInstance]:
        if block_id is None:
            return None
        return self._blocks.get(block_id)

    def template(self, block: BlockInstance) -> BlockTemplate:
        return self.registry.lookup(block.type_id)

    def parent_of(self, block_id: int) -> Optional[BlockInstance]:
        return next((b for b in self._blocks.values() if b.next == block_id), None)

    def roots(self) -> list[BlockInstance]:
        return [b for b in self._blocks.values()
                if b.type_id in self.registry and self.template(b).is_root]

    # ── mutation ──

    def create(self, type_id: str, x: float, y: float,
               params: Optional[Mapping[str, Any]] = None) -> BlockInstance:
        tpl = self.registry.lookup(type_id)
        if params is None:
            values = copy.deepcopy(dict(tpl.defaults))
        else:
            values = validate_params(params)
        block = BlockInstance(
            id=next(self._ids),
            type_id=type_id,
            x=x,
            y=y,
            params=values,
            width=max(self.settings.block_min_width,
                      len(tpl.label) * self.settings.char_width + 20),
            height=self.settings.block_height,
        )
        self._blocks[block.id] = block
        log.debug("created %s #%d at (%s, %s)", type_id, block.id, x, y)
        return block

    def move(self, block_id: int, x: float, y: float) -> None:
        block = self.get(block_id)
        block.x, block.y = x, y

    def set_params(self, block_id: int, new_params: Any) -> None:
        block = self.get(block_id)
        block.params = validate_params(new_params)
        log.debug("params of #%d set to %r", block_id, block.params)

    def link(self, parent_id: int, child_id: Optional[int]) -> None:
        """Set a forward link directly; callers keep the chain invariants."""
        parent = self.get(parent_id)
        if child_id is not None:
            self.get(child_id)
        parent.next = child_id

    def disconnect_incoming(self, block_id: int) -> None:
        parent = self.parent_of(block_id)
        if parent is not None:
            parent.next = None
            log.debug("unlinked #%d from #%d", block_id, parent.id)

    def remove(self, block_id: int) -> None:
        self.get(block_id)
        self.disconnect_incoming(block_id)
        del self._blocks[block_id]
        log.debug("removed #%d", block_id)

    def clear(self) -> None:
        self._blocks.clear()

    # ── chains ──

    def chain_from(self, root_id: int) -> Iterator[BlockInstance]:
        seen: set[int] = set()
        cur: Optional[int] = root_id
        while cur is not None and cur not in seen:
            block = self._blocks.get(cur)
            if block is None:
                return
            seen.add(cur)
            yield block
            cur = block.next

    def shift_chain(self, head_id: Optional[int], x: float, y: float) -> None:
        """Stack a chain top-down starting at (x, y)."""
        if head_id is None:
            return
        for block in self.chain_from(head_id):
            block.x, block.y = x, y
            y += block.height


# ═══════════════════════════ SNAPPING ═══════════════════════════

class ConnectionResolver:
    """Attach a dropped block below the first block whose bottom edge is close."""

    def __init__(self, graph: BlockGraph, snap_radius: Optional[float] = None):
        self.graph = graph
        self.snap_radius = graph.settings.snap_radius if snap_radius is None else snap_radius

    def _candidates(self, moved: BlockInstance) -> Iterator[BlockInstance]:
        for b in self.graph:
            if b.id == moved.id:
                continue
            if b.type_id in self.graph.registry and self.graph.template(b).accepts_below:
                yield b

    def find_parent(self, moved: BlockInstance) -> Optional[BlockInstance]:
        # First match in graph order wins, not the nearest.
        for cand in self._candidates(moved):
            dist = math.hypot(cand.x - moved.x, cand.y + cand.height - moved.y)
            if dist < self.snap_radius:
                return cand
        return None

    def resolve(self, moved_id: int) -> Optional[int]:
        g = self.graph
        moved = g.get(moved_id)
        tpl = g.template(moved)
        if not tpl.accepts_above:
            return None

        parent = self.find_parent(moved)
        if parent is None:
            return None

        g.disconnect_incoming(moved.id)
        displaced = parent.next
        parent.next = moved.id
        moved.x = parent.x
        moved.y = parent.y + parent.height

        if displaced is not None:
            if tpl.accepts_below:
                moved.next = displaced
                g.shift_chain(displaced, moved.x, moved.y + moved.height)
            else:
                # Kept as-is: nothing can carry the displaced chain.
                log.warning("block #%d cannot take a next block; chain at #%d left unattached",
                            moved.id, displaced)

        log.info("snapped #%d (%s) below #%d (%s)", moved.id, moved.type_id,
                 parent.id, parent.type_id)
        return parent.id


def snap(graph: BlockGraph, moved_id: int) -> Optional[int]:
    return ConnectionResolver(graph).resolve(moved_id)


# ═══════════════════════════ LOWERING ═══════════════════════════

TOUCH_PRESSED_CHANNEL = 1
TOUCH_X_CHANNEL = 3
TOUCH_Y_CHANNEL = 4


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_int(value: Any) -> int:
    # parseInt-style: "12.7" -> 12
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        return int(float(value))
    except OverflowError:
        raise ValueError(f"not a finite number: {value!r}") from None


def _lua_string(value: Any) -> str:
    return format_value(value).replace("\\", "\\\\").replace('"', '\\"')


def _lower_pattern(tpl: BlockTemplate, params: Params) -> str:
    return tpl.pattern.format_map({k: format_value(v) for k, v in params.items()})


def _lower_draw_text(tpl: BlockTemplate, p: Params) -> str:
    return f'screen.drawText({format_value(p["x"])}, {format_value(p["y"])}, "{_lua_string(p["text"])}")'


def _lower_click_detect(tpl: BlockTemplate, p: Params) -> str:
    x, y = format_value(p["x"]), format_value(p["y"])
    right = _as_int(p["x"]) + _as_int(p["w"])
    bottom = _as_int(p["y"]) + _as_int(p["h"])
    tx = f"input.getNumber({TOUCH_X_CHANNEL})"
    ty = f"input.getNumber({TOUCH_Y_CHANNEL})"
    return (f"if input.getBool({TOUCH_PRESSED_CHANNEL}) and {tx} > {x} and {tx} < {right}"
            f" and {ty} > {y} and {ty} < {bottom} then")


PHRASES: dict[str, Callable[[BlockTemplate, Params], str]] = {
    "drawText": _lower_draw_text,
    "clickDetect": _lower_click_detect,
}


class LuaLowering:
    """Graph -> Lua text.  Pure; a fresh pass over the whole graph each call."""

    def __init__(self, graph: BlockGraph, registry: Optional[BlockRegistry] = None,
                 settings: Optional[CodeblockSettings] = None):
        self.graph = graph
        self.registry = registry or graph.registry
        self.settings = settings or graph.settings

    def _template(self, block: BlockInstance) -> Optional[BlockTemplate]:
        if block.type_id in self.registry:
            return self.registry.lookup(block.type_id)
        return None

    def lower_block(self, block: BlockInstance) -> str:
        tpl = self._template(block)
        if tpl is None:
            raise LoweringGap(f"-- unknown block {block.type_id}")
        phrase = PHRASES.get(block.type_id, _lower_pattern)
        try:
            return phrase(tpl, block.params)
        except KeyError as exc:
            raise LoweringGap(
                f"-- cannot lower {block.type_id}: missing parameter {exc.args[0]!r}") from None
        except (ValueError, TypeError) as exc:
            raise LoweringGap(f"-- cannot lower {block.type_id}: {exc}") from None

    def _line(self, block: BlockInstance) -> str:
        try:
            return self.lower_block(block)
        except LoweringGap as gap:
            log.warning("lowering gap at #%d: %s", block.id, gap)
            return str(gap)

    def lines(self) -> list[str]:
        out = [self.settings.header, ""]
        unit = self.settings.indent
        for root in self.graph.roots():
            out.append(self._line(root))
            depth = 1
            for block in itertools.islice(self.graph.chain_from(root.id), 1, None):
                tpl = self._template(block)
                if tpl is not None and tpl.closes_scope:
                    depth = max(0, depth - 1)
                out.append(unit * depth + self._line(block))
                if tpl is not None and tpl.opens_scope:
                    depth += 1
            out.append("end")
            out.append("")
        return out

    def lower(self) -> str:
        return "\n".join(self.lines()) + "\n"


def lower(graph: BlockGraph, registry: Optional[BlockRegistry] = None,
          settings: Optional[CodeblockSettings] = None) -> str:
    return LuaLowering(graph, registry, settings).lower()


# ═══════════════════════════ SNAPSHOTS ═══════════════════════════

BlockRef = Union[int, float, str]


class BlockRecord(BaseModel):
    """One saved block.  Extra keys from older saves are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: BlockRef
    type: str
    x: float
    y: float
    params: Optional[dict[StrictStr, Primitive]] = None
    next: Optional[BlockRef] = None


_RECORDS_ADAPTER = TypeAdapter(list[BlockRecord])


def save_snapshot(graph: BlockGraph) -> list[dict[str, Any]]:
    return [
        BlockRecord(id=b.id, type=b.type_id, x=b.x, y=b.y,
                    params=dict(b.params), next=b.next).model_dump()
        for b in graph
    ]


def load_snapshot(records: Any, registry: Optional[BlockRegistry] = None,
                  settings: Optional[CodeblockSettings] = None) -> BlockGraph:
    """Rebuild a graph from saved records.

    Ids are reassigned; links are remapped within the snapshot.  Links that
    would break the chain invariants (dangling, self, into a root, or a
    second parent for the same block) are dropped with a warning.
    """
    try:
        parsed = _RECORDS_ADAPTER.validate_python(records)
    except ValidationError as exc:
        raise InvalidParameters.from_validation(exc, "snapshot") from None

    graph = BlockGraph(registry, settings)
    for rec in parsed:
        graph.registry.lookup(rec.type)
    seen_ids: set[BlockRef] = set()
    for rec in parsed:
        if rec.id in seen_ids:
            raise InvalidParameters(f"invalid snapshot (duplicate block id {rec.id!r})")
        seen_ids.add(rec.id)

    new_id: dict[BlockRef, int] = {}
    for rec in parsed:
        new_id[rec.id] = graph.create(rec.type, rec.x, rec.y, rec.params).id

    claimed: set[int] = set()
    for rec in parsed:
        if rec.next is None:
            continue
        src = new_id[rec.id]
        dst = new_id.get(rec.next)
        if dst is None:
            log.warning("dropping link %r -> %r: target not in snapshot", rec.id, rec.next)
        elif dst == src:
            log.warning("dropping self link on %r", rec.id)
        elif not graph.template(graph.get(dst)).accepts_above:
            log.warning("dropping link %r -> %r: target is a root", rec.id, rec.next)
        elif dst in claimed:
            log.warning("dropping link %r -> %r: target already has a parent", rec.id, rec.next)
        else:
            graph.link(src, dst)
            claimed.add(dst)
    log.info("loaded %d blocks", len(graph))
    return graph


def write_project(graph: BlockGraph, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.write_text(json.dumps(save_snapshot(graph), indent=2), encoding="utf-8")
    log.info("saved %d blocks to %s", len(graph), path)
    return path


def _read_json(path: Union[str, Path]) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidParameters(f"{path}: invalid JSON: {exc.msg} (line {exc.lineno})") from None


def read_project(path: Union[str, Path], registry: Optional[BlockRegistry] = None,
                 settings: Optional[CodeblockSettings] = None) -> BlockGraph:
    return load_snapshot(_read_json(path), registry, settings)


def new_project(settings: Optional[CodeblockSettings] = None) -> BlockGraph:
    graph = BlockGraph(settings=settings)
    graph.create("onDraw", graph.settings.origin_x, graph.settings.origin_y)
    return graph


# ═══════════════════════════ SHAPE IMPORT ═══════════════════════════

Number = Union[int, float]


class ShapeRecord(BaseModel):
    """A primitive exported by the canvas drawing tool."""

    model_config = ConfigDict(extra="ignore")

    tool: str = Field(validation_alias=AliasChoices("tool", "kind"))
    x1: Number = 0
    y1: Number = 0
    x2: Number = 0
    y2: Number = 0
    w: Number = 0
    h: Number = 0
    radius: Number = 0
    text: Optional[str] = None
    color: Optional[str] = None
    alpha: Optional[Union[int, float, str]] = None


_SHAPES_ADAPTER = TypeAdapter(list[ShapeRecord])

_HEX_RE = re.compile(r"^#?([a-f\d]{2})([a-f\d]{2})([a-f\d]{2})$", re.I)

SHAPE_BLOCKS: dict[str, tuple[str, Callable[[ShapeRecord], Params]]] = {
    "rect": ("drawRect", lambda s: {"x": s.x1, "y": s.y1, "w": s.w, "h": s.h}),
    "rectF": ("drawRectF", lambda s: {"x": s.x1, "y": s.y1, "w": s.w, "h": s.h}),
    "line": ("drawLine", lambda s: {"x1": s.x1, "y1": s.y1, "x2": s.x2, "y2": s.y2}),
    "circle": ("drawCircle", lambda s: {"x": s.x1, "y": s.y1, "r": s.radius}),
    "text": ("drawText", lambda s: {"x": s.x1, "y": s.y1, "text": s.text or "text"}),
}


def hex_to_rgb(value: Optional[str]) -> tuple[int, int, int]:
    """'#rrggbb' -> (r, g, b); anything else is white."""
    m = _HEX_RE.match(value or "")
    if not m:
        return (255, 255, 255)
    return (int(m[1], 16), int(m[2], 16), int(m[3], 16))


def _alpha(value: Any) -> int:
    if value is None:
        return 255
    try:
        return _as_int(value)
    except (ValueError, OverflowError):
        return 255


def import_shapes(shapes: Any, registry: Optional[BlockRegistry] = None,
                  settings: Optional[CodeblockSettings] = None) -> BlockGraph:
    """Build an onDraw chain from drawing primitives.

    A setColor block is only inserted when the color differs from the last
    one emitted.  Unknown tools are skipped.
    """
    try:
        parsed = _SHAPES_ADAPTER.validate_python(shapes)
    except ValidationError as exc:
        raise InvalidParameters.from_validation(exc, "shape list") from None

    graph = BlockGraph(registry, settings)
    x, y = graph.settings.origin_x, graph.settings.origin_y
    last = graph.create("onDraw", x, y)
    y += last.height
    last_color: Optional[tuple[int, int, int, int]] = None

    def append(type_id: str, params: Params) -> None:
        nonlocal last, y
        block = graph.create(type_id, x, y, params)
        graph.link(last.id, block.id)
        last = block
        y += block.height

    skipped = 0
    for shape in parsed:
        color = (*hex_to_rgb(shape.color), _alpha(shape.alpha))
        if color != last_color:
            append("setColor", dict(zip("rgba", color)))
            last_color = color
        entry = SHAPE_BLOCKS.get(shape.tool)
        if entry is None:
            skipped += 1
            continue
        type_id, build = entry
        append(type_id, build(shape))

    if skipped:
        log.info("skipped %d shapes with unsupported tools", skipped)
    return graph


def read_shapes(path: Union[str, Path], registry: Optional[BlockRegistry] = None,
                settings: Optional[CodeblockSettings] = None) -> BlockGraph:
    return import_shapes(_read_json(path), registry, settings)


# ═══════════════════════════ STYLES ═══════════════════════════

S = Style

BG = S(color="#2a2a2a", bgcolor="#1e1e1e")
GRID = S(color="#2a2a2a", bgcolor="#1e1e1e")
TRASH = S(color="#ff6666", bgcolor="#2a1414", bold=True)

KIND_COLORS = {
    "event":      "#FFD700",
    "command":    "#2196F3",
    "wrapper":    "#FF9800",
    "terminator": "#FF9800",
    "value":      "#9C27B0",
    "sugar":      "#9C27B0",
}
TYPE_COLORS = {
    "setColor": "#4CAF50",
    "varSet":   "#E91E63",
    "math":     "#E91E63",
}
KIND_TAGS = {
    "event": "EV", "command": "", "wrapper": "?", "terminator": "",
    "value": "IN", "sugar": "IN",
}

SEL_BORDER = S(color="#ffffff", bgcolor="#1e1e1e", bold=True)


def block_style(block: BlockInstance, tpl: Optional[BlockTemplate]) -> tuple[Style, Style]:
    hue = TYPE_COLORS.get(block.type_id) or KIND_COLORS.get(tpl.kind if tpl else "", "#888888")
    return S(color=hue, bgcolor="#1e1e1e"), S(color="black", bgcolor=hue, bold=True)


# ═══════════════════════════ DRAWING ═══════════════════════════

def block_cells(block: BlockInstance, settings: CodeblockSettings) -> tuple[int, int, int, int]:
    """World geometry -> (col, row, width, height) in canvas cells."""
    col = int(round(block.x / settings.cell_width))
    row = int(round(block.y / settings.row_height))
    w = max(8, int(round(block.width / settings.cell_width)))
    return col, row, w, settings.rows_per_block


def block_caption(graph: BlockGraph, block: BlockInstance) -> str:
    try:
        return LuaLowering(graph).lower_block(block)
    except LoweringGap:
        return block.type_id


def build_buffer(
    graph: BlockGraph,
    sel_id: int | None,
    drag_id: int | None,
    cam_x: int,
    cam_y: int,
    w: int,
    h: int,
) -> list[list[tuple[str, Style]]]:
    """Build the visible canvas buffer (w × h); the last row is the trash."""
    settings = graph.settings
    buf = [[(" ", BG) for _ in range(w)] for _ in range(h)]

    def put(cx: int, cy: int, ch: str, st: Style) -> None:
        bx, by = cx - cam_x, cy - cam_y
        if 0 <= bx < w and 0 <= by < h - 1:
            buf[by][bx] = (ch, st)

    def puts(cx: int, cy: int, txt: str, st: Style) -> None:
        for i, ch in enumerate(txt):
            put(cx + i, cy, ch, st)

    for r in range(h):
        for c in range(w):
            if (c + cam_x) % 5 == 0 and (r + cam_y) % 3 == 0:
                buf[r][c] = ("·", GRID)

    # selected / dragged blocks are drawn last so they sit on top
    order = sorted(graph, key=lambda b: (b.id == sel_id) + 2 * (b.id == drag_id))
    for block in order:
        tpl = graph.registry.lookup(block.type_id) if block.type_id in graph.registry else None
        bs, ts = block_style(block, tpl)
        if block.id == sel_id:
            bs = SEL_BORDER
        x, y, nw, nh = block_cells(block, settings)

        put(x, y, "┌" if tpl and tpl.accepts_above else "╭", bs)
        put(x + nw - 1, y, "┐", bs)
        put(x, y + nh - 1, "└", bs)
        put(x + nw - 1, y + nh - 1, "┘", bs)
        for c in range(x + 1, x + nw - 1):
            put(c, y, "─", bs)
            put(c, y + nh - 1, "─", bs)
        for r in range(y + 1, y + nh - 1):
            put(x, r, "│", bs)
            put(x + nw - 1, r, "│", bs)
        if tpl and tpl.accepts_above:
            put(x + 2, y, "▼", bs)
        if tpl and tpl.accepts_below and nh > 1:
            put(x + 2, y + nh - 1, "▼", bs)
        tag = KIND_TAGS.get(tpl.kind, "") if tpl else "??"
        if tag:
            puts(x + 4, y, f"[{tag}]", bs)

        for r in range(y + 1, y + nh - 1):
            for c in range(x + 1, x + nw - 1):
                put(c, r, " ", ts)
        mid = y + nh // 2
        caption = block_caption(graph, block)[: nw - 4]
        if nh > 2:
            puts(x + 2, mid, caption, ts)

    label = " × DROP HERE TO DELETE × "
    trash_row = [(" ", TRASH) for _ in range(w)]
    start = max(0, (w - len(label)) // 2)
    for i, ch in enumerate(label[: w]):
        if start + i < w:
            trash_row[start + i] = (ch, TRASH)
    if h > 0:
        buf[h - 1] = trash_row
    return buf


# ═══════════════════════════ PARAMS SCREEN ═══════════════════════════

class ParamsScreen(ModalScreen):
    """Modal for editing a block's parameters as JSON."""

    CSS = """
    ParamsScreen { align: center middle; }
    #edit-box {
        width: 64;
        height: auto;
        border: solid #FF9800;
        background: #252525;
        padding: 1 2;
    }
    #edit-box Label { color: #FF9800; }
    #edit-box Input { margin: 0 0 1 0; }
    #edit-box Button { margin: 1 1 0 0; }
    #edit-error { color: #ff6666; }
    """

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, block: BlockInstance):
        super().__init__()
        self.block = block

    def compose(self) -> ComposeResult:
        with Vertical(id="edit-box"):
            yield Label(f"EDIT {self.block.type_id} #{self.block.id}")
            yield Label("Parameters (JSON):")
            yield Input(value=json.dumps(self.block.params), id="inp-params")
            yield Label("", id="edit-error")
            with Horizontal():
                yield Button("Cancel", id="btn-cancel")
                yield Button("Save", id="btn-save", variant="primary")

    @on(Button.Pressed, "#btn-save")
    @on(Input.Submitted, "#inp-params")
    def do_save(self) -> None:
        text = self.query_one("#inp-params", Input).value
        try:
            params = parse_params(text)
        except InvalidParameters as exc:
            self.query_one("#edit-error", Label).update(str(exc))
            return
        self.dismiss(params)

    @on(Button.Pressed, "#btn-cancel")
    def do_cancel(self) -> None:
        self.dismiss(None)

    def action_cancel(self) -> None:
        self.dismiss(None)


# ═══════════════════════════ CANVAS WIDGET ═══════════════════════════

class BlockCanvas(Widget, can_focus=True):
    """Renders the block graph and turns mouse gestures into graph commands."""

    def __init__(self, **kw: Any):
        super().__init__(**kw)
        self.cam_x = 0
        self.cam_y = 0
        self._drag_id: int | None = None
        self._drag_off: tuple[int, int] | None = None
        self._buf: list[list[tuple[str, Style]]] = []

    @property
    def _app(self) -> "CodeblockApp":
        return self.app  # type: ignore

    # ── rendering ──

    def _rebuild(self) -> None:
        w, h = self.size.width, self.size.height
        if w <= 0 or h <= 0:
            self._buf = []
            return
        a = self._app
        self._buf = build_buffer(a.graph, a.selected_id, self._drag_id,
                                 self.cam_x, self.cam_y, w, h)

    def render_line(self, y: int) -> Strip:
        if not self._buf:
            self._rebuild()
        if 0 <= y < len(self._buf):
            row = self._buf[y]
            return Strip([Segment(ch, st) for ch, st in row], self.size.width)
        return Strip([Segment(" " * max(1, self.size.width), BG)], max(1, self.size.width))

    def refresh_canvas(self) -> None:
        self._buf = []
        self.refresh()

    def on_resize(self, event: events.Resize) -> None:
        self.refresh_canvas()

    # ── coordinate helpers ──

    def _to_canvas(self, sx: int, sy: int) -> tuple[int, int]:
        return sx + self.cam_x, sy + self.cam_y

    def _to_world(self, cx: int, cy: int) -> tuple[float, float]:
        s = self._app.graph.settings
        return cx * s.cell_width, cy * s.row_height

    def _hit(self, sx: int, sy: int) -> BlockInstance | None:
        cx, cy = self._to_canvas(sx, sy)
        a = self._app
        blocks = sorted(a.graph, key=lambda b: b.id == a.selected_id)
        for block in reversed(blocks):
            x, y, w, h = block_cells(block, a.graph.settings)
            if x <= cx < x + w and y <= cy < y + h:
                return block
        return None

    def _on_trash(self, sy: int) -> bool:
        return sy >= self.size.height - 1

    # ── mouse ──

    def on_mouse_down(self, event: events.MouseDown) -> None:
        self.focus()
        a = self._app
        cx, cy = self._to_canvas(event.x, event.y)
        hit = self._hit(event.x, event.y)

        if a.tool == "add":
            if not self._on_trash(event.y):
                wx, wy = self._to_world(cx, cy)
                a.add_block(a.new_block_type, wx, wy)
            a.tool = "select"
            a.refresh_all()
            return

        if hit is None:
            a.selected_id = None
            a.refresh_all()
            return

        a.selected_id = hit.id
        if event.button == 3:
            a.action_edit_block()
            return

        # Left button: lift the block out of its chain and start dragging
        x, y, _, _ = block_cells(hit, a.graph.settings)
        self._drag_id = hit.id
        self._drag_off = (cx - x, cy - y)
        a.graph.disconnect_incoming(hit.id)
        self.capture_mouse()
        a.refresh_all()

    def on_mouse_move(self, event: events.MouseMove) -> None:
        if self._drag_id is None or self._drag_off is None:
            return
        a = self._app
        cx, cy = self._to_canvas(event.x, event.y)
        wx, wy = self._to_world(cx - self._drag_off[0], cy - self._drag_off[1])
        if self._drag_id in a.graph:
            a.graph.move(self._drag_id, wx, wy)
            self.refresh_canvas()

    def on_mouse_up(self, event: events.MouseUp) -> None:
        drag_id = self._drag_id
        self._drag_id = None
        self._drag_off = None
        self.release_mouse()
        if drag_id is None:
            return
        self._app.drop_block(drag_id, trash=self._on_trash(event.y))

    # ── keyboard panning ──

    def on_key(self, event: events.Key) -> None:
        pan = {"up": (0, -2), "down": (0, 2), "left": (-3, 0), "right": (3, 0)}
        if event.key in pan:
            dx, dy = pan[event.key]
            self.cam_x = max(0, self.cam_x + dx)
            self.cam_y = max(0, self.cam_y + dy)
            self.refresh_canvas()
            event.prevent_default()
            event.stop()


# ═══════════════════════════ MAIN APP ═══════════════════════════

class CodeblockApp(App):
    """Terminal block editor with live Lua output."""

    CSS = """
    Screen { background: #1e1e1e; }

    #toolbar {
        height: 3;
        background: #252525;
        border-bottom: solid #3a3a3a;
        content-align: left middle;
        padding: 0 1;
    }

    #main-area { height: 1fr; }

    #canvas {
        width: 1fr;
    }

    #panel {
        width: 56;
        border-left: solid #3a3a3a;
        background: #181818;
    }

    #code-head {
        height: 1;
        padding: 0 1;
    }

    #code-scroll {
        height: 1fr;
        scrollbar-size: 1 1;
    }

    #help-sec {
        height: auto;
        max-height: 9;
        border-top: solid #2a2a2a;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("a", "tool_add", "Add"),
        Binding("left_square_bracket", "prev_type", "Prev type", show=False),
        Binding("right_square_bracket", "next_type", "Next type", show=False),
        Binding("d", "delete_block", "Del"),
        Binding("delete", "delete_block", "Delete", show=False),
        Binding("e", "edit_block", "Edit"),
        Binding("w", "save_project", "Save"),
        Binding("x", "clear_canvas", "Clear"),
        Binding("escape", "cancel_action", "Esc"),
        Binding("q", "quit", "Quit"),
    ]

    # ── state ──
    graph: BlockGraph
    selected_id: int | None = None
    tool: str = "select"
    new_block_type: str = "setColor"
    lua: str = ""

    def __init__(self, graph: BlockGraph | None = None,
                 project_path: Path | str | None = None) -> None:
        super().__init__()
        self.graph = graph if graph is not None else new_project()
        self.project_path = Path(project_path or self.graph.settings.project_file)
        self.block_types = self.graph.registry.type_ids()

    def compose(self) -> ComposeResult:
        yield Static(id="toolbar")
        with Horizontal(id="main-area"):
            yield BlockCanvas(id="canvas")
            with Vertical(id="panel"):
                yield Static(id="code-head")
                with VerticalScroll(id="code-scroll"):
                    yield Static(id="code-text")
                yield Static(id="help-sec")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#canvas", BlockCanvas).focus()
        self.relower()

    # ═══ UI refresh ═══

    def relower(self) -> None:
        self.lua = lower(self.graph)
        self.refresh_all()

    def refresh_all(self) -> None:
        self._draw_toolbar()
        self._draw_code()
        self._draw_help()
        self.query_one("#canvas", BlockCanvas).refresh_canvas()

    def _draw_toolbar(self) -> None:
        t = Text()
        t.append("  CODEBLOCK ", S(color="#FFD700", bold=True))
        t.append("LUA EDITOR  ", S(color="#555555"))

        active = self.tool == "add"
        st = S(color="#1e1e1e", bgcolor="#FF9800", bold=True) if active else S(color="#FF9800")
        t.append(" [a]ADD ", st)
        t.append(" ")
        t.append(" [ ", S(color="#555555"))
        t.append(f"{self.new_block_type}", S(color="#ffcc66", bold=True))
        t.append(" ] ", S(color="#555555"))

        if self.selected_id is not None:
            t.append(" │ ", S(color="#3a3a3a"))
            block = self.graph.find(self.selected_id)
            if block:
                t.append(f" {block.type_id} #{block.id} ", S(color="#ffcc66"))
            t.append("[e]EDIT [d]DEL ", S(color="#ff8866"))

        t.append(" │ ", S(color="#3a3a3a"))
        t.append(f" {self.project_path.name} ", S(color="#44ddff"))

        self.query_one("#toolbar", Static).update(t)

    def _draw_code(self) -> None:
        head = Text()
        head.append("LUA ", S(color="#4CAF50", bold=True))
        head.append(f"{len(self.lua)} chars", S(color="#888888"))
        self.query_one("#code-head", Static).update(head)
        self.query_one("#code-text", Static).update(
            Syntax(self.lua, "lua", theme="monokai", background_color="#181818"))

    def _draw_help(self) -> None:
        t = Text()
        t.append("HELP\n", S(color="#555555", bold=True))
        lines = [
            "Mouse: click=select, drag=move/snap",
            "Right click / [e]: edit parameters",
            "[a]Add  [ ]: block type  [d]Delete",
            "[w]Save [x]Clear  Arrows: pan",
            "Drop on bottom row to delete",
        ]
        for ln in lines:
            t.append(f"  {ln}\n", S(color="#666666"))
        self.query_one("#help-sec", Static).update(t)

    # ═══ graph commands ═══

    def add_block(self, type_id: str, x: float, y: float) -> int | None:
        try:
            block = self.graph.create(type_id, x, y)
        except CodeblockError as exc:
            self.notify(str(exc), severity="error")
            return None
        self.selected_id = block.id
        self.relower()
        return block.id

    def drop_block(self, block_id: int, trash: bool = False) -> None:
        """End of a drag: delete over the trash row, otherwise try to snap."""
        try:
            if trash:
                self.graph.remove(block_id)
                if self.selected_id == block_id:
                    self.selected_id = None
            else:
                snap(self.graph, block_id)
        except CodeblockError as exc:
            self.notify(str(exc), severity="error")
        self.relower()

    # ═══ tool actions ═══

    def action_tool_add(self) -> None:
        self.tool = "add"
        self.refresh_all()

    def _cycle_type(self, step: int) -> None:
        i = self.block_types.index(self.new_block_type) if self.new_block_type in self.block_types else 0
        self.new_block_type = self.block_types[(i + step) % len(self.block_types)]
        self.refresh_all()

    def action_prev_type(self) -> None:
        self._cycle_type(-1)

    def action_next_type(self) -> None:
        self._cycle_type(1)

    def action_delete_block(self) -> None:
        if self.selected_id is not None and self.selected_id in self.graph:
            self.graph.remove(self.selected_id)
            self.selected_id = None
            self.relower()

    def action_edit_block(self) -> None:
        block = self.graph.find(self.selected_id)
        if block is None:
            return
        if not block.params:
            self.notify(f"{block.type_id} has no parameters")
            return
        self.push_screen(ParamsScreen(block), self._on_edit)

    def _on_edit(self, result: Params | None) -> None:
        if result is not None and self.selected_id is not None:
            try:
                self.graph.set_params(self.selected_id, result)
            except CodeblockError as exc:
                self.notify(str(exc), severity="error")
        self.relower()

    def action_save_project(self) -> None:
        try:
            write_project(self.graph, self.project_path)
        except OSError as exc:
            self.notify(f"save failed: {exc}", severity="error")
            return
        self.notify(f"saved {self.project_path}")

    def action_clear_canvas(self) -> None:
        self.graph.clear()
        self.graph.create("onDraw", self.graph.settings.origin_x, self.graph.settings.origin_y)
        self.selected_id = None
        self.relower()

    def action_cancel_action(self) -> None:
        self.tool = "select"
        self.refresh_all()


# ═══════════════════════════ CLI ═══════════════════════════

console = Console()


def _configure_logging(verbose: bool, tui: bool = False) -> None:
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    handler: logging.Handler = TextualHandler() if tui else RichHandler(
        console=Console(stderr=True), show_path=False)
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)


@click.group()
@click.version_option(version=__version__, prog_name="codeblock")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Block editor that writes Stormworks Lua."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("project", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def edit(ctx: click.Context, project: Path | None) -> None:
    """Open the terminal editor (loads PROJECT if it exists)."""
    _configure_logging(ctx.obj["verbose"], tui=True)
    graph = None
    if project is not None and project.exists():
        try:
            graph = read_project(project)
        except CodeblockError as exc:
            raise click.ClickException(str(exc))
    CodeblockApp(graph, project).run()


@cli.command("lower")
@click.argument("project", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the Lua here instead of stdout")
@click.pass_context
def lower_cmd(ctx: click.Context, project: Path, output: Path | None) -> None:
    """Print the Lua generated from a saved PROJECT."""
    _configure_logging(ctx.obj["verbose"])
    try:
        text = lower(read_project(project))
    except CodeblockError as exc:
        raise click.ClickException(str(exc))
    if output is None:
        click.echo(text, nl=False)
    else:
        output.write_text(text, encoding="utf-8")
        click.echo(f"wrote {len(text)} chars to {output}")


@cli.command("import")
@click.argument("shapes", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path),
              help="Save the resulting project here")
@click.option("--lua", "show_lua", is_flag=True, help="Print the generated Lua")
@click.pass_context
def import_cmd(ctx: click.Context, shapes: Path, output: Path | None, show_lua: bool) -> None:
    """Turn a SHAPES export from the canvas tool into blocks."""
    _configure_logging(ctx.obj["verbose"])
    try:
        graph = read_shapes(shapes)
    except CodeblockError as exc:
        raise click.ClickException(str(exc))
    if output is not None:
        write_project(graph, output)
    if show_lua:
        click.echo(lower(graph), nl=False)
    else:
        where = f", saved to {output}" if output is not None else ""
        click.echo(f"imported {len(graph)} blocks{where}")


@cli.command()
def types() -> None:
    """List the block catalog."""
    table = Table(title="Block types")
    table.add_column("type", style="bold", no_wrap=True)
    table.add_column("kind")
    table.add_column("links")
    table.add_column("scope")
    table.add_column("defaults")
    for t in REGISTRY:
        links = ("↑" if t.accepts_above else " ") + ("↓" if t.accepts_below else " ")
        scope = ("close " if t.closes_scope else "") + ("open" if t.opens_scope else "")
        table.add_row(t.type_id, t.kind, links, scope.strip(), json.dumps(dict(t.defaults)))
    console.print(table)


# ═══════════════════════════ ENTRY ═══════════════════════════

if __name__ == "__main__":
    cli()
