"""Shared fixtures: fixed settings so CODEBLOCK_* variables don't leak into tests."""
import pytest

from codeblock import BlockGraph, CodeblockSettings


@pytest.fixture
def settings() -> CodeblockSettings:
    return CodeblockSettings(_env_file=None)


@pytest.fixture
def graph(settings: CodeblockSettings) -> BlockGraph:
    return BlockGraph(settings=settings)


def chain(graph: BlockGraph, *items, x: float = 50.0, y: float = 50.0):
    """Create blocks from (type_id, params) pairs, stack and link them."""
    blocks = []
    for item in items:
        type_id, params = item if isinstance(item, tuple) else (item, None)
        block = graph.create(type_id, x, y, params)
        if blocks:
            graph.link(blocks[-1].id, block.id)
        y += block.height
        blocks.append(block)
    return blocks
