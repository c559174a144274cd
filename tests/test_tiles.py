import asyncio
import io

import httpx
import numpy as np
import pytest
from PIL import Image

from pumpkinscan.canvas.tiles import DEFAULT_MARKER, TileEvaluator, find_marker, parse_marker
from pumpkinscan.core.errors import ConfigError, MatchEvaluationError
from pumpkinscan.core.worker_protocol import TileMatch


def tile_png(marker_at=None, size=(32, 32), alpha=255):
    img = Image.new("RGBA", size, (255, 255, 255, 255))
    if marker_at is not None:
        ox, oy = marker_at
        for dx, dy, color in DEFAULT_MARKER:
            img.putpixel((ox + dx, oy + dy), (*color, alpha))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def evaluate(handler, x=3, y=4, params=None):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await TileEvaluator(params).evaluate(client, x, y)

    return asyncio.run(main())


def test_marker_found_at_offset():
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, content=tile_png((5, 7)))

    match = evaluate(handler, params={"tile_url": "http://tiles.test/{x}/{y}.png"})
    assert match == TileMatch(3, 4, 5, 7)
    assert requested == ["http://tiles.test/3/4.png"]


def test_tile_without_marker():
    assert evaluate(lambda r: httpx.Response(200, content=tile_png())) is None


def test_transparent_marker_is_ignored():
    assert evaluate(lambda r: httpx.Response(200, content=tile_png((5, 7), alpha=0))) is None


def test_missing_tile_is_empty():
    assert evaluate(lambda r: httpx.Response(404)) is None


def test_server_error_raises():
    with pytest.raises(MatchEvaluationError):
        evaluate(lambda r: httpx.Response(429))


def test_undecodable_tile_raises():
    with pytest.raises(MatchEvaluationError):
        evaluate(lambda r: httpx.Response(200, content=b"not a png"))


def test_find_marker_with_tolerance():
    pixels = np.zeros((4, 4, 4), dtype=np.uint8)
    pixels[2, 1] = (100, 100, 100, 255)
    marker = parse_marker([[0, 0, [102, 98, 100]]])
    assert find_marker(pixels, marker) is None
    assert find_marker(pixels, marker, tolerance=2) == (1, 2)


def test_marker_larger_than_tile():
    pixels = np.zeros((2, 2, 4), dtype=np.uint8)
    assert find_marker(pixels, DEFAULT_MARKER) is None


@pytest.mark.parametrize("raw", [[], [[-1, 0, [0, 0, 0]]], [[0, 0, [1, 2]]], [["a"]]])
def test_parse_marker_rejects(raw):
    with pytest.raises(ConfigError):
        parse_marker(raw)
