"""
CPU stand-in for the fixed function rasterizer and the parallel fragment dispatch

Triangles out of the vertex stage are mapped to window space, every pixel center is tested with
screen-space barycentric weights, and the plane coordinate is interpolated linearly with those
same weights (no perspective divide, as a `noperspective` varying would be). Row 0 is the top of
the framebuffer, pixel centers sit on half integers.

Fragments never share state, so the framebuffer is split in horizontal bands mapped over a thread
pool; numpy releases the GIL on the heavy array work, and the result is independent of the
number of workers.
"""
import os
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, TypeVar

import numpy as np
from attrs import define, field

from mandelflow import logger
from mandelflow.uniforms import ScaleUniform, Vertex
from mandelflow.vertex import transform, triangles

T = TypeVar("T")

SUBPIXEL: int = 2**8
"""Fixed point precision of window space vertex positions"""


def _positive(instance, attribute, value) -> None:
    if (value < 1):
        raise ValueError(f"Framebuffer {attribute.name} must be positive, got {value}")


@define(frozen=True)
class Framebuffer:
    width:  int = field(converter=int, validator=_positive)
    height: int = field(converter=int, validator=_positive)

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def centers(self, start: int=0, stop: Optional[int]=None) -> tuple[np.ndarray, np.ndarray]:
        """Window space pixel centers of rows [start, stop), each of shape (rows, width)"""
        stop = (self.height if (stop is None) else stop)
        return np.meshgrid(
            np.arange(self.width, dtype=np.float64) + 0.5,
            np.arange(start, stop, dtype=np.float64) + 0.5,
        )

    def window(self, clip: np.ndarray) -> np.ndarray:
        """Map clip positions of shape (N, 4) to window space (N, 2), y pointing down"""
        ndc = clip[:, 0:2].astype(np.float64) / clip[:, 3:4]
        window = np.column_stack((
            (ndc[:, 0] + 1.0) * 0.5 * self.width,
            (1.0 - ndc[:, 1]) * 0.5 * self.height,
        ))

        # Snap to the sub-pixel grid, shared edges then evaluate exactly on both sides
        return np.round(window * SUBPIXEL) / SUBPIXEL


def _edge(a: np.ndarray, b: np.ndarray, px: np.ndarray, py: np.ndarray) -> np.ndarray:
    return (b[0] - a[0])*(py - a[1]) - (b[1] - a[1])*(px - a[0])


def barycentric(
    triangle: np.ndarray,
    px: np.ndarray,
    py: np.ndarray,
) -> Optional[np.ndarray]:
    """
    Screen-space barycentric weights of points against a (3, 2) window space triangle

    Returns an array of shape (3, *px.shape), or None for a collapsed triangle
    """
    a, b, c = triangle
    if not (area := _edge(a, b, *c)):
        return None
    return np.stack((
        _edge(b, c, px, py),
        _edge(c, a, px, py),
        _edge(a, b, px, py),
    )) / area


def rasterize(
    vertices: Sequence[Vertex],
    scale: ScaleUniform,
    framebuffer: Framebuffer,
    start: int=0,
    stop: Optional[int]=None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Run the vertex stage on a triangle strip and interpolate its plane coordinates

    Returns the float32 varying of shape (rows, width, 2) and the coverage mask (rows, width).
    A pixel belongs to the first triangle covering it; uncovered pixels have a zero varying
    """
    px, py = framebuffer.centers(start, stop)
    coords  = np.zeros((*px.shape, 2), dtype=np.float64)
    covered = np.zeros(px.shape, dtype=bool)

    for triangle in triangles(vertices):
        clip, coord = transform(
            [vertex.position for vertex in triangle],
            [vertex.coord for vertex in triangle],
            scale
        )

        if (weights := barycentric(framebuffer.window(clip), px, py)) is None:
            continue

        inside = np.all(weights >= 0.0, axis=0) & (~covered)
        coords[inside] = np.einsum("vn,vc->nc", weights[:, inside], coord.astype(np.float64))
        covered |= inside

    return (coords.astype(np.float32), covered)

# ------------------------------------------------------------------------------------------------ #

def default_workers() -> int:
    if (option := os.getenv("MANDELFLOW_WORKERS")):
        return max(1, int(option))
    return (os.cpu_count() or 1)


def bands(height: int, workers: int) -> list[tuple[int, int]]:
    """Split rows [0, height) in at most `workers` contiguous, non empty bands"""
    edges = np.linspace(0, height, min(max(1, workers), height) + 1).round().astype(int)
    return [(int(a), int(b)) for a, b in zip(edges, edges[1:]) if (b > a)]


def parallel_map(
    function: Callable[[int, int], T],
    height: int,
    workers: Optional[int]=None,
) -> list[T]:
    """Call `function(start, stop)` for every band of rows, results in top to bottom order"""
    workers = (workers or default_workers())
    split = bands(height, workers)

    if (len(split) == 1):
        return [function(*split[0])]

    logger.debug(f"Dispatching {height} rows in {len(split)} bands")

    with ThreadPoolExecutor(max_workers=len(split)) as executor:
        return list(executor.map(lambda band: function(*band), split))

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_framebuffer_validation(self):
        import pytest
        with pytest.raises(ValueError):
            Framebuffer(0, 10)
        with pytest.raises(ValueError):
            Framebuffer(10, -1)

    def test_pixel_centers(self):
        px, py = Framebuffer(3, 4).centers(1, 3)
        assert px.shape == (2, 3)
        assert px[0].tolist() == [0.5, 1.5, 2.5]
        assert py[:, 0].tolist() == [1.5, 2.5]

    def test_window_space(self):
        clip = np.array([[-1, 1, 0, 1], [1, -1, 0, 1], [0, 0, 0, 1]], dtype=np.float32)
        assert Framebuffer(8, 6).window(clip).tolist() == [[0, 0], [8, 6], [4, 3]]

    def test_full_coverage(self):
        from mandelflow.vertex import quad
        framebuffer = Framebuffer(17, 9)
        _, covered = rasterize(quad(17, 9), ScaleUniform.window(17, 9), framebuffer)
        assert covered.all()

    def test_linear_interpolation(self):
        # A single triangle with distinct coordinates per corner
        vertices = [
            Vertex(position=(0, 0, 0), coord=(0.0, 0.0)),
            Vertex(position=(8, 0, 0), coord=(1.0, 0.5)),
            Vertex(position=(0, 8, 0), coord=(-2.0, 3.0)),
        ]
        framebuffer = Framebuffer(8, 8)
        coords, covered = rasterize(vertices, ScaleUniform.window(8, 8), framebuffer)

        window = np.array([[0, 0], [8, 0], [0, 8]], dtype=np.float64)
        attributes = np.array([v.coord for v in vertices], dtype=np.float64)
        px, py = framebuffer.centers()
        for row, col in zip(*np.nonzero(covered)):
            weights = barycentric(window, px[row, col], py[row, col])
            expected = (weights @ attributes).astype(np.float32)
            assert np.allclose(coords[row, col], expected, atol=1e-6)

        # Pixels past the hypotenuse are left uncovered
        assert covered[0, 0] and (not covered[7, 7])
        assert (coords[~covered] == 0).all()

    def test_no_perspective_divide(self):
        # Varying at the quad center is the plain average, whatever the depth of the corners
        from mandelflow.vertex import quad
        vertices = [
            Vertex(position=(*v.position[:2], z), coord=v.coord)
            for v, z in zip(quad(4, 4), (0.0, 0.9, -0.9, 0.3))
        ]
        coords, _ = rasterize(vertices, ScaleUniform.window(4, 4), Framebuffer(4, 4))
        assert np.allclose(coords[1, 1], (-0.25, 0.25))
        assert np.allclose(coords[2, 2], (0.25, -0.25))

    def test_collapsed_projection(self):
        from mandelflow.vertex import quad
        _, covered = rasterize(quad(8, 8), ScaleUniform((0.0, -0.25)), Framebuffer(8, 8))
        assert not covered.any()

    def test_bands(self):
        assert bands(10, 1) == [(0, 10)]
        assert bands(10, 3) == [(0, 3), (3, 7), (7, 10)]
        assert bands(2, 8) == [(0, 1), (1, 2)]
        assert sum(b - a for a, b in bands(1081, 7)) == 1081

    def test_parallel_map_order(self):
        assert parallel_map(lambda a, b: list(range(a, b)), 10, workers=4) == [[0, 1], [2, 3, 4], [5, 6, 7], [8, 9]]
