"""
Vertex stage -> rasterizer -> fragment stage, the fixed order of a draw call

The CPU path evaluates every covered pixel with the vectorized fragment stage over bands of rows;
the GPU path (`mandelflow.shader`) runs the same two stages as GLSL on an OpenGL 4 context.
"""
import os
from collections.abc import Sequence
from enum import Enum
from typing import Optional, Self

import numpy as np

from mandelflow import logger
from mandelflow.fragment import evaluate_many
from mandelflow.raster import Framebuffer, parallel_map, rasterize
from mandelflow.uniforms import UniformBlocks, Vertex


class Backend(Enum):
    CPU = "cpu"
    GPU = "gpu"

    @classmethod
    def _missing_(cls, value: object) -> Optional[Self]:
        for member in cls:
            if (member.value == str(value).lower()):
                return member
        return None

    @classmethod
    def infer(cls) -> Self:
        """The `MANDELFLOW_BACKEND` environment override, else the CPU"""
        if (option := os.getenv("MANDELFLOW_BACKEND")):
            try:
                return cls(option)
            except ValueError:
                raise ValueError(
                    f"Invalid backend '{option}', options are {[item.value for item in cls]}"
                ) from None
        return cls.CPU


def render_cpu(
    vertices: Sequence[Vertex],
    blocks: UniformBlocks,
    framebuffer: Framebuffer,
    workers: Optional[int]=None,
) -> np.ndarray:
    """
    Draw a triangle strip, returns float32 RGBA of shape (height, width, 4), row 0 on top.
    Pixels no triangle covers keep a transparent black clear color
    """
    def band(start: int, stop: int) -> np.ndarray:
        coords, covered = rasterize(vertices, blocks.scale, framebuffer, start, stop)
        color = np.zeros((*covered.shape, 4), dtype=np.float32)
        color[covered] = evaluate_many(coords[covered], blocks)
        return color

    logger.debug(f"Rendering {framebuffer.size} on the CPU with {blocks.iterations.iterations} iterations")
    return np.concatenate(parallel_map(band, framebuffer.height, workers), axis=0)

# ------------------------------------------------------------------------------------------------ #

class __pytest__:

    @staticmethod
    def blocks(width: int, height: int, iterations: int=32, **affine) -> UniformBlocks:
        from mandelflow.uniforms import ComplexAffineUniform, IterationUniform, ScaleUniform
        return UniformBlocks(
            scale=ScaleUniform.window(width, height),
            affine=ComplexAffineUniform(**affine),
            iterations=IterationUniform(iterations),
        )

    def test_backend_infer(self, monkeypatch):
        import pytest
        monkeypatch.delenv("MANDELFLOW_BACKEND", raising=False)
        assert Backend.infer() is Backend.CPU
        monkeypatch.setenv("MANDELFLOW_BACKEND", "GPU")
        assert Backend.infer() is Backend.GPU
        monkeypatch.setenv("MANDELFLOW_BACKEND", "vulkan")
        with pytest.raises(ValueError):
            Backend.infer()

    def test_backend_any_case(self):
        import pytest
        assert Backend("CPU") is Backend.CPU
        assert Backend("Gpu") is Backend.GPU
        assert Backend(Backend.GPU) is Backend.GPU
        with pytest.raises(ValueError):
            Backend("Metal")

    def test_frame_is_opaque(self):
        from mandelflow.vertex import quad
        frame = render_cpu(quad(40, 30), self.blocks(40, 30, delta=(-0.5, 0.0)), Framebuffer(40, 30))
        assert frame.shape == (30, 40, 4)
        assert frame.dtype == np.float32
        assert (frame[..., 3] == 1.0).all()
        assert np.isfinite(frame).all()

    def test_matches_fragment_stage(self):
        from mandelflow.fragment import evaluate
        from mandelflow.vertex import quad
        blocks = self.blocks(24, 16, iterations=40, alpha=(0.8, 0.6), delta=(-0.6, 0.1))
        vertices = quad(24, 16)
        frame = render_cpu(vertices, blocks, Framebuffer(24, 16))
        coords, _ = rasterize(vertices, blocks.scale, Framebuffer(24, 16))
        for row in range(16):
            for col in range(24):
                assert frame[row, col].tobytes() == evaluate(coords[row, col], blocks).tobytes()

    def test_workers_do_not_change_result(self):
        from mandelflow.vertex import quad
        blocks = self.blocks(64, 48, iterations=50, alpha=(0.02, 0.01), delta=(-0.74, 0.12))
        frames = [render_cpu(quad(64, 48), blocks, Framebuffer(64, 48), workers=n) for n in (1, 3, 8)]
        assert frames[0].tobytes() == frames[1].tobytes() == frames[2].tobytes()

    def test_zero_iterations_black_frame(self):
        from mandelflow.vertex import quad
        frame = render_cpu(quad(16, 16), self.blocks(16, 16, iterations=0), Framebuffer(16, 16))
        assert (frame == (0.0, 0.0, 0.0, 1.0)).all()

    def test_center_of_set_is_black(self):
        from mandelflow.vertex import quad
        # Even sizes put the origin on a pixel corner, an odd size puts it on a pixel center
        frame = render_cpu(quad(15, 15), self.blocks(15, 15, iterations=100), Framebuffer(15, 15))
        assert frame[7, 7].tolist() == [0.0, 0.0, 0.0, 1.0]

    def test_partial_coverage_is_cleared(self):
        vertices = [
            Vertex(position=(0, 0, 0), coord=(2.5, 0.0)),
            Vertex(position=(8, 0, 0), coord=(2.5, 0.0)),
            Vertex(position=(0, 8, 0), coord=(2.5, 0.0)),
        ]
        frame = render_cpu(vertices, self.blocks(8, 8), Framebuffer(8, 8))
        assert frame[7, 7].tolist() == [0.0, 0.0, 0.0, 0.0]
        assert frame[0, 0].tolist() == [0.0, 0.0, 0.0, 1.0]
