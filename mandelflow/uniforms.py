"""
Uniform blocks consumed by the two pipeline stages

The host owns every value here and replaces them between draws, a draw only reads them. Each
block is modelled as an immutable struct passed explicitly to the evaluation functions, rather
than as an implicit global binding, and can pack itself in the std140 layout the GLSL side uses:

• Scale      (binding 0): vec2 scale               - vertex stage
• Affine     (binding 1): dvec2 alpha, dvec2 delta - fragment stage
• Iterations (binding 2): int iterations           - fragment stage
"""
from enum import IntEnum
from typing import Self

import numpy as np
from attrs import define, field

from mandelflow import logger


def _pair(dtype: type):
    """Converter of any 2-sequence into a tuple of two `dtype` scalars"""
    def convert(value) -> tuple:
        x, y = value
        return (dtype(x), dtype(y))
    return convert


def _int32(value) -> int:
    """Clamp to the range of the GLSL `int` the value is uploaded as"""
    value, bounds = int(value), np.iinfo(np.int32)
    if not (bounds.min <= value <= bounds.max):
        logger.warning(f"Iteration budget of {value} clamped to the int32 range")
        return int(np.clip(value, bounds.min, bounds.max))
    return value


class Binding(IntEnum):
    """Reserved uniform block binding slots"""
    Scale      = 0
    Affine     = 1
    Iterations = 2

# ------------------------------------------------------------------------------------------------ #

@define(frozen=True)
class Vertex:
    position: tuple[float, float, float] = field(converter=lambda xyz: tuple(map(float, xyz)))
    """Quad corner in model space, usually pixels with a top-left origin"""

    coord: tuple[float, float] = field(converter=_pair(float))
    """Plane coordinate forwarded to the fragment stage"""

# ------------------------------------------------------------------------------------------------ #

STD140_SCALE = np.dtype(dict(
    names=["scale"],
    formats=[("<f4", 2)],
    offsets=[0],
    itemsize=16,
))

STD140_AFFINE = np.dtype(dict(
    names=["alpha", "delta"],
    formats=[("<f8", 2), ("<f8", 2)],
    offsets=[0, 16],
    itemsize=32,
))

STD140_ITERATIONS = np.dtype(dict(
    names=["iterations"],
    formats=["<i4"],
    offsets=[0],
    itemsize=16,
))


@define(frozen=True)
class ScaleUniform:
    scale: tuple[np.float32, np.float32] = field(converter=_pair(np.float32))

    binding = Binding.Scale

    def __attrs_post_init__(self):
        if not all(self.scale):
            logger.warning(f"Scale uniform {self.scale} has a zero component, projection collapses")

    @classmethod
    def window(cls, width: float, height: float) -> Self:
        """Map a (0..width, 0..height) top-left pixel rectangle onto normalized device space"""
        return cls(scale=(2.0/width, -2.0/height))

    def pack(self) -> bytes:
        data = np.zeros(1, dtype=STD140_SCALE)
        data["scale"] = self.scale
        return data.tobytes()


@define(frozen=True)
class ComplexAffineUniform:
    alpha: tuple[float, float] = field(default=(1.0, 0.0), converter=_pair(float))
    """Complex multiplier, combined rotation and zoom"""

    delta: tuple[float, float] = field(default=(0.0, 0.0), converter=_pair(float))
    """Complex translation, the pan offset"""

    binding = Binding.Affine

    @classmethod
    def identity(cls) -> Self:
        return cls(alpha=(1.0, 0.0), delta=(0.0, 0.0))

    @classmethod
    def from_complex(cls, alpha: complex, delta: complex) -> Self:
        return cls(alpha=(alpha.real, alpha.imag), delta=(delta.real, delta.imag))

    def pack(self) -> bytes:
        data = np.zeros(1, dtype=STD140_AFFINE)
        data["alpha"] = self.alpha
        data["delta"] = self.delta
        return data.tobytes()


@define(frozen=True)
class IterationUniform:
    iterations: int = field(default=64, converter=_int32)

    binding = Binding.Iterations

    def __attrs_post_init__(self):
        if (self.iterations < 1):
            logger.warning(f"Iteration budget of {self.iterations} renders a black frame")

    def pack(self) -> bytes:
        data = np.zeros(1, dtype=STD140_ITERATIONS)
        data["iterations"] = self.iterations
        return data.tobytes()


@define(frozen=True)
class UniformBlocks:
    """Everything a draw reads besides the vertices, one field per binding slot"""
    scale:      ScaleUniform
    affine:     ComplexAffineUniform = field(factory=ComplexAffineUniform.identity)
    iterations: IterationUniform = field(factory=IterationUniform)

    def __iter__(self):
        yield from (self.scale, self.affine, self.iterations)

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_window_scale(self):
        assert ScaleUniform.window(800, 600).scale == (np.float32(2/800), np.float32(-2/600))

    def test_scale_is_single_precision(self):
        uniform = ScaleUniform(scale=(0.1, 0.2))
        assert all(isinstance(x, np.float32) for x in uniform.scale)

    def test_zero_scale_is_accepted(self):
        assert ScaleUniform(scale=(0, 1)).scale == (0.0, 1.0)

    def test_non_positive_iterations_are_accepted(self):
        assert IterationUniform(0).iterations == 0
        assert IterationUniform(-3).iterations == -3

    def test_affine_from_complex(self):
        affine = ComplexAffineUniform.from_complex(alpha=2j, delta=-0.5+0.25j)
        assert affine.alpha == (0.0, 2.0)
        assert affine.delta == (-0.5, 0.25)

    def test_std140_sizes(self):
        assert len(ScaleUniform((1, 1)).pack()) == 16
        assert len(ComplexAffineUniform().pack()) == 32
        assert len(IterationUniform(8).pack()) == 16

    def test_std140_offsets(self):
        packed = ComplexAffineUniform(alpha=(1.5, -2.0), delta=(0.25, 3.0)).pack()
        assert np.frombuffer(packed, dtype="<f8").tolist() == [1.5, -2.0, 0.25, 3.0]
        packed = IterationUniform(300).pack()
        assert np.frombuffer(packed[:4], dtype="<i4")[0] == 300
        packed = ScaleUniform((0.5, -0.25)).pack()
        assert np.frombuffer(packed[:8], dtype="<f4").tolist() == [0.5, -0.25]

    def test_blocks_bindings(self):
        blocks = UniformBlocks(scale=ScaleUniform((1, 1)))
        assert [block.binding for block in blocks] == [0, 1, 2]

    def test_iterations_fit_int32(self):
        assert IterationUniform(2**40).iterations == 2**31 - 1
        assert IterationUniform(-2**40).iterations == -2**31
        packed = IterationUniform(2**40).pack()
        assert np.frombuffer(packed[:4], dtype="<i4")[0] == 2**31 - 1
