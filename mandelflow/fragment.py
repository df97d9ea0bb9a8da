"""
Fractal evaluation stage

Per fragment, the single precision plane coordinate is widened to double precision, mapped to the
complex plane by `c = alpha*coord + delta` (one complex multiply gives rotation and zoom, delta
pans), then iterated by `z <- z**2 + c` from `z = c` until it leaves the radius 2 disk or the
iteration budget runs out. The loop breaks *before* assigning the escaping iterate, so the index
reported is the one at which the escape was detected.

Colors are single precision: `r = i/iterations` (zero for points that never escaped), `g = r**2`,
`b = r**4`, fully opaque.

The scalar functions are the reference; the `*_many` variants run the same operations in the same
order on numpy arrays, so both give bit-identical results element by element.
"""
from collections.abc import Sequence

import numpy as np

from mandelflow.uniforms import ComplexAffineUniform, IterationUniform, UniformBlocks

ESCAPE_RADIUS_SQUARED: float = 4.0

BLACK = np.array((0.0, 0.0, 0.0, 1.0), dtype=np.float32)

# ------------------------------------------------------------------------------------------------ #
# Scalar reference

def sample_point(coord: Sequence[float], affine: ComplexAffineUniform) -> tuple[float, float]:
    """Widen a plane coordinate to double precision and apply the complex affine map"""
    x, y = (float(np.float32(value)) for value in coord)
    (ax, ay), (dx, dy) = affine.alpha, affine.delta
    return (
        ax*x - ay*y + dx,
        ax*y + ay*x + dy,
    )


def escape(c: tuple[float, float], iterations: int) -> int:
    """Index at which the orbit of `c` escaped, or `iterations` when it never did"""
    cx, cy = c
    zx, zy = cx, cy
    i = 0

    while (i < iterations):
        x = zx*zx - zy*zy + cx
        y = zy*zx + zx*zy + cy

        # Overflowed (nan) orbits count as escaped
        if not (x*x + y*y <= ESCAPE_RADIUS_SQUARED):
            break

        zx, zy = x, y
        i += 1

    return i


def colorize(i: int, iterations: int) -> np.ndarray:
    """Map an escape index to an opaque RGBA color"""
    if (iterations <= 0) or (i == iterations):
        r = np.float32(0.0)
    else:
        r = np.float32(i) / np.float32(iterations)
    g = (r * r)
    b = (g * g)
    return np.array((r, g, b, 1.0), dtype=np.float32)


def evaluate(coord: Sequence[float], blocks: UniformBlocks) -> np.ndarray:
    """The whole fragment stage for one interpolated plane coordinate"""
    iterations = blocks.iterations.iterations
    c = sample_point(coord, blocks.affine)
    return colorize(escape(c, iterations), iterations)

# ------------------------------------------------------------------------------------------------ #
# Vectorized

def sample_points(coords: np.ndarray, affine: ComplexAffineUniform) -> tuple[np.ndarray, np.ndarray]:
    """Vectorized `sample_point` over an array of shape (..., 2)"""
    coords = np.asarray(coords, dtype=np.float32).astype(np.float64)
    x, y = coords[..., 0], coords[..., 1]
    (ax, ay), (dx, dy) = affine.alpha, affine.delta
    with np.errstate(over="ignore", invalid="ignore"):
        return (
            ax*x - ay*y + dx,
            ax*y + ay*x + dy,
        )


def escape_many(cx: np.ndarray, cy: np.ndarray, iterations: int) -> np.ndarray:
    """Vectorized `escape`, only the orbits still running are iterated each step"""
    cx = np.asarray(cx, dtype=np.float64)
    cy = np.asarray(cy, dtype=np.float64)
    shape = cx.shape

    index = np.full(cx.size, max(iterations, 0), dtype=np.int64)
    alive = np.arange(cx.size)
    cx, cy = cx.ravel(), cy.ravel()
    zx, zy = cx, cy

    with np.errstate(over="ignore", invalid="ignore"):
        for i in range(iterations):
            x = zx*zx - zy*zy + cx
            y = zy*zx + zx*zy + cy

            if (escaped := ~(x*x + y*y <= ESCAPE_RADIUS_SQUARED)).any():
                index[alive[escaped]] = i
                keep  = ~escaped
                alive = alive[keep]
                cx, cy = cx[keep], cy[keep]
                x,  y  = x[keep],  y[keep]

            if (alive.size == 0):
                break

            zx, zy = x, y

    return index.reshape(shape)


def colorize_many(index: np.ndarray, iterations: int) -> np.ndarray:
    """Vectorized `colorize`, returns an array of shape (..., 4)"""
    index = np.asarray(index)
    color = np.zeros((*index.shape, 4), dtype=np.float32)
    color[..., 3] = 1.0

    if (iterations <= 0):
        return color

    r = np.where(
        index == iterations, np.float32(0.0),
        index.astype(np.float32) / np.float32(iterations)
    ).astype(np.float32)
    g = (r * r)
    color[..., 0] = r
    color[..., 1] = g
    color[..., 2] = (g * g)
    return color


def evaluate_many(coords: np.ndarray, blocks: UniformBlocks) -> np.ndarray:
    """The whole fragment stage for an array of plane coordinates of shape (..., 2)"""
    iterations = blocks.iterations.iterations
    cx, cy = sample_points(coords, blocks.affine)
    return colorize_many(escape_many(cx, cy, iterations), iterations)

# ------------------------------------------------------------------------------------------------ #

class __pytest__:

    @staticmethod
    def blocks(iterations: int=64, alpha=(1.0, 0.0), delta=(0.0, 0.0)) -> UniformBlocks:
        from mandelflow.uniforms import ScaleUniform
        return UniformBlocks(
            scale=ScaleUniform((1.0, 1.0)),
            affine=ComplexAffineUniform(alpha=alpha, delta=delta),
            iterations=IterationUniform(iterations),
        )

    def test_identity_mapping(self):
        rng = np.random.default_rng(1)
        coords = rng.uniform(-2, 2, (256, 2)).astype(np.float32)
        identity = ComplexAffineUniform.identity()
        cx, cy = sample_points(coords, identity)
        assert np.array_equal(cx, coords[:, 0].astype(np.float64))
        assert np.array_equal(cy, coords[:, 1].astype(np.float64))
        for coord in coords[:16]:
            assert sample_point(coord, identity) == (float(coord[0]), float(coord[1]))

    def test_complex_multiplication(self):
        # Rotation by 90 degrees and a zoom of 2, then a pan
        affine = ComplexAffineUniform(alpha=(0.0, 2.0), delta=(1.0, -1.0))
        assert sample_point((1.0, 0.0), affine) == (1.0, 1.0)
        assert sample_point((0.0, 1.0), affine) == (-1.0, -1.0)
        assert sample_point((0.5, 0.25), affine) == (0.5, 0.0)

    def test_widened_before_mapping(self):
        # Deep zoom: neighbouring single precision coordinates must stay distinct
        affine = ComplexAffineUniform(alpha=(1e-8, 0.0), delta=(-0.743643887037151, 0.131825904205330))
        a = np.float32(0.5)
        b = np.nextafter(a, np.float32(1.0))
        assert sample_point((a, 0), affine)[0] != sample_point((b, 0), affine)[0]
        assert sample_point((a, 0), affine)[0] == (1e-8*float(a) - 0.0*0.0 - 0.743643887037151)

    def test_break_before_assignment(self):
        # z0 = c = 3 is checked through z1 = 12, detected on the first step
        assert escape((3.0, 0.0), 10) == 0
        # z1 = 2 sits on the radius, z2 = 5 escapes on the second step
        assert escape((1.0, 0.0), 10) == 1
        assert escape((0.5, 0.0), 10) == 3
        assert escape((0.5, 0.0), 3) == 3

    def test_immediate_escape_is_black(self):
        assert colorize(escape((3.0, 0.0), 1), 1).tolist() == [0.0, 0.0, 0.0, 1.0]
        assert colorize(escape((3.0, 0.0), 8), 8).tolist() == [0.0, 0.0, 0.0, 1.0]

    def test_origin_never_escapes(self):
        for iterations in (1, 2, 17, 256):
            assert escape((0.0, 0.0), iterations) == iterations
            assert escape((-2.0, 0.0), iterations) == iterations
            assert evaluate((0.0, 0.0), self.blocks(iterations)).tolist() == [0.0, 0.0, 0.0, 1.0]

    def test_zero_iterations(self):
        rng = np.random.default_rng(2)
        coords = rng.uniform(-3, 3, (32, 32, 2)).astype(np.float32)
        for iterations in (0, -5):
            blocks = self.blocks(iterations)
            with np.errstate(all="raise"):
                colors = evaluate_many(coords, blocks)
            assert np.array_equal(colors, np.broadcast_to(BLACK, colors.shape))
            assert evaluate(coords[0, 0], blocks).tolist() == BLACK.tolist()

    def test_color_mapping(self):
        r = np.float32(3) / np.float32(8)
        assert colorize(3, 8).tolist() == [r, r*r, (r*r)*(r*r), 1.0]

    def test_red_is_monotonic(self):
        reds = [colorize(i, 100)[0] for i in range(100)]
        assert all(a < b for a, b in zip(reds, reds[1:]))

    def test_idempotence(self):
        blocks = self.blocks(128, alpha=(0.01, 0.003), delta=(-0.75, 0.1))
        coords = np.random.default_rng(3).uniform(-1, 1, (64, 64, 2)).astype(np.float32)
        assert evaluate_many(coords, blocks).tobytes() == evaluate_many(coords, blocks).tobytes()
        assert evaluate(coords[5, 7], blocks).tobytes() == evaluate(coords[5, 7], blocks).tobytes()

    def test_vectorized_matches_scalar(self):
        blocks = self.blocks(50, alpha=(1.3, 0.4), delta=(-0.5, 0.0))
        u, v = np.meshgrid(np.linspace(-1.5, 1.5, 41), np.linspace(-1, 1, 29))
        coords = np.stack((u, v), axis=-1).astype(np.float32)
        colors = evaluate_many(coords, blocks)
        for row in range(coords.shape[0]):
            for col in range(coords.shape[1]):
                assert colors[row, col].tobytes() == evaluate(coords[row, col], blocks).tobytes()

    def test_escape_many_matches_escape(self):
        points = [(3.0, 0.0), (1.0, 0.0), (0.5, 0.0), (0.0, 0.0), (-2.0, 0.0), (0.3, 0.5)]
        cx, cy = np.array(points).T
        assert escape_many(cx, cy, 20).tolist() == [escape(c, 20) for c in points]

    def test_overflow_is_contained(self):
        colors = evaluate_many(
            np.array([[1e30, 1e30], [0, 0]], dtype=np.float32),
            self.blocks(16, alpha=(1e200, 0.0))
        )
        assert np.isfinite(colors).all()
        assert escape((1e200, 1e200), 16) == 0
        assert escape_many(np.array([1e200]), np.array([1e200]), 16).tolist() == [0]
