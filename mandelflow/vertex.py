"""
Vertex transform stage

Model-space quad corners are scaled per axis and anchored by the fixed `(-1, +1)` offset, so the
host only has to refresh the scale uniform on a resize. The plane coordinate is forwarded as is.
"""
import itertools
from collections.abc import Iterable, Sequence
from typing import Optional

import numpy as np

from mandelflow.uniforms import ScaleUniform, Vertex

OFFSET = np.array((-1.0, 1.0), dtype=np.float32)
"""Fixed clip-space anchor added after scaling"""


def transform(
    position: Sequence[float] | np.ndarray,
    coord: Sequence[float] | np.ndarray,
    scale: ScaleUniform,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Run the vertex stage on one vertex or on arrays of shape (N, 3) and (N, 2)

    Returns the clip position `(sx*px - 1, sy*py + 1, pz, 1)` and the untouched coordinate
    """
    position = np.asarray(position, dtype=np.float32)
    coord = np.asarray(coord, dtype=np.float32)

    clip = np.empty((*position.shape[:-1], 4), dtype=np.float32)
    clip[..., 0:2] = position[..., 0:2] * np.array(scale.scale, dtype=np.float32) + OFFSET
    clip[..., 2] = position[..., 2]
    clip[..., 3] = 1.0
    return (clip, coord)


def quad(width: float, height: float, coords: Optional[Sequence[tuple[float, float]]]=None) -> list[Vertex]:
    """
    Full-screen quad as a 4 vertices triangle strip in pixel space, top-left origin

    The default plane coordinates span `[-w/h, w/h]` horizontally and `[1, -1]` top to bottom,
    so a square region of the plane is never stretched and the imaginary axis points up
    """
    aspect = (width / height)
    corners = [(x, y) for y, x in itertools.product((0, height), (0, width))]
    coords = coords or [(u*aspect, -v) for v, u in itertools.product((-1, 1), (-1, 1))]
    return [
        Vertex(position=(x, y, 0.0), coord=coord)
        for (x, y), coord in zip(corners, coords, strict=True)
    ]


def triangles(vertices: Sequence[Vertex]) -> Iterable[tuple[Vertex, Vertex, Vertex]]:
    """Split a triangle strip into its triangles, odd ones swap order to keep the winding"""
    for index in range(len(vertices) - 2):
        a, b, c = vertices[index:index + 3]
        yield (a, b, c) if (index % 2 == 0) else (b, a, c)


def attributes(vertices: Sequence[Vertex]) -> np.ndarray:
    """Interleaved `3f 2f` vertex buffer contents"""
    return np.array([(*v.position, *v.coord) for v in vertices], dtype="f4")

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_clip_position(self):
        scale = ScaleUniform((0.5, -0.25))
        clip, coord = transform((4.0, 8.0, 0.5), (0.1, 0.2), scale)
        assert clip.tolist() == [0.5*4.0 - 1.0, -0.25*8.0 + 1.0, 0.5, 1.0]
        assert coord.tolist() == np.array((0.1, 0.2), dtype=np.float32).tolist()

    def test_clip_position_exact_many(self):
        rng = np.random.default_rng(42)
        position = rng.uniform(-100, 100, (64, 3)).astype(np.float32)
        coord = rng.uniform(-1, 1, (64, 2)).astype(np.float32)
        for sx, sy in ((1.0, 1.0), (2/640, -2/480), (-3.5, 0.125)):
            scale = ScaleUniform((sx, sy))
            clip, passed = transform(position, coord, scale)
            sx, sy = scale.scale
            assert np.array_equal(clip[:, 0], sx*position[:, 0] - np.float32(1))
            assert np.array_equal(clip[:, 1], sy*position[:, 1] + np.float32(1))
            assert np.array_equal(clip[:, 2], position[:, 2])
            assert np.all(clip[:, 3] == 1.0)
            assert np.array_equal(passed, coord)

    def test_window_quad_fills_clip_space(self):
        vertices = quad(640, 480)
        clip, _ = transform([v.position for v in vertices], [v.coord for v in vertices], ScaleUniform.window(640, 480))
        assert np.allclose(clip[:, 0:2], [[-1, 1], [1, 1], [-1, -1], [1, -1]], atol=1e-6)

    def test_quad_coords(self):
        vertices = quad(200, 100)
        assert [v.coord for v in vertices] == [(-2.0, 1.0), (2.0, 1.0), (-2.0, -1.0), (2.0, -1.0)]
        custom = quad(10, 10, coords=[(0, 0), (1, 0), (0, 1), (1, 1)])
        assert custom[3].coord == (1.0, 1.0)

    def test_strip_triangles(self):
        a, b, c, d = quad(2, 2)
        assert list(triangles([a, b, c, d])) == [(a, b, c), (c, b, d)]

    def test_attributes_layout(self):
        data = attributes(quad(4, 2))
        assert data.shape == (4, 5)
        assert data.dtype == np.float32
        assert data[3].tolist() == [4.0, 2.0, 0.0, 2.0, -1.0]
