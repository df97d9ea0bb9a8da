"""
Interactive navigation of the complex plane, the host side feeding the uniform blocks

A pixel `(x, y)` of a `width x height` window has the plane coordinate

    p = ((2x/width - 1) * width/height) + (1 - 2y/height)i

which the fragment stage maps to `c = alpha*p + delta`. Panning, zooming and rotating are all
done by updating (alpha, delta) such that a chosen anchor point stays under the cursor.
"""
import cmath
import math
from collections.abc import Iterable
from typing import Optional, Self

from attrs import define, field

from mandelflow import logger
from mandelflow.message import Key, Message
from mandelflow.uniforms import (
    ComplexAffineUniform,
    IterationUniform,
    ScaleUniform,
    UniformBlocks,
    Vertex,
)
from mandelflow.vertex import quad

DEFAULT_ALPHA: complex = complex(1.25, 0.0)
"""Unit zoom, the whole set fits vertically in the window"""

DEFAULT_DELTA: complex = complex(-0.5, 0.0)
"""Centered on the set rather than on the origin"""

ZOOM_STEP: float = 0.25
"""Octaves of zoom per scroll wheel notch"""

MAX_ITERATIONS: int = 2**16


def _size(value: Iterable[int]) -> tuple[int, int]:
    width, height = map(int, value)
    if (width < 1) or (height < 1):
        raise ValueError(f"Window size must be positive, got ({width}, {height})")
    return (width, height)


@define
class FractalView:
    alpha: complex = field(default=DEFAULT_ALPHA, converter=complex)
    """Complex multiplier of the plane coordinates, rotation and inverse zoom"""

    delta: complex = field(default=DEFAULT_DELTA, converter=complex)
    """Complex plane point at the center of the window"""

    iterations: int = field(default=64, converter=lambda x: min(max(0, int(x)), MAX_ITERATIONS))
    """Escape time iteration budget"""

    size: tuple[int, int] = field(default=(1920, 1080), converter=_size)
    """Window size in pixels"""

    @property
    def width(self) -> int:
        return self.size[0]

    @property
    def height(self) -> int:
        return self.size[1]

    @property
    def aspect_ratio(self) -> float:
        return (self.width / self.height)

    # -------------------------------------------|
    # Coordinates

    def plane(self, x: float, y: float) -> complex:
        """Plane coordinate of a window pixel position"""
        return complex(
            (2*x/self.width - 1) * self.aspect_ratio,
            (1 - 2*y/self.height)
        )

    def plane_delta(self, dx: float, dy: float) -> complex:
        """Plane coordinate displacement of a window pixel displacement"""
        return complex(2*dx/self.height, -2*dy/self.height)

    def point(self, p: complex) -> complex:
        """Complex plane point a plane coordinate maps to"""
        return (self.alpha * p + self.delta)

    # -------------------------------------------|
    # Navigation

    def reset(self) -> Self:
        self.alpha = DEFAULT_ALPHA
        self.delta = DEFAULT_DELTA
        return self

    def look(self, center: complex, zoom: float=1.0, rotation: float=0.0) -> Self:
        """Absolute placement: window center, magnification and rotation in degrees"""
        if (zoom <= 0):
            raise ValueError(f"Zoom must be positive, got {zoom}")
        self.alpha = (DEFAULT_ALPHA / zoom) * cmath.exp(1j * math.radians(rotation))
        self.delta = complex(center)
        return self

    def _transform(self, factor: complex, anchor: Optional[complex]) -> Self:
        anchor = complex(anchor or 0)
        alpha = (self.alpha * factor)
        self.delta += (self.alpha - alpha) * anchor
        self.alpha = alpha
        return self

    def pan(self, du: float, dv: float) -> Self:
        """Drag the plane by a plane coordinate displacement, it follows the cursor"""
        self.delta -= self.alpha * complex(du, dv)
        return self

    def zoom(self, amount: float, anchor: Optional[complex]=None) -> Self:
        """Zoom in by `amount` octaves (out when negative), the anchor stays fixed"""
        return self._transform(2**(-amount), anchor)

    def rotate(self, angle: float, anchor: Optional[complex]=None) -> Self:
        """Rotate the sampling frame by `angle` radians about the anchor"""
        return self._transform(cmath.exp(1j * angle), anchor)

    @property
    def magnification(self) -> float:
        return abs(DEFAULT_ALPHA) / abs(self.alpha)

    @property
    def rotation(self) -> float:
        """Rotation of the sampling frame in degrees"""
        return math.degrees(cmath.phase(self.alpha))

    def location(self) -> str:
        return (
            f"Center: {self.delta.real:+.16f} {self.delta.imag:+.16f}i, "
            f"Zoom: {self.magnification:.6g}x, "
            f"Rotation: {self.rotation:.2f}°"
        )

    # -------------------------------------------|
    # Uniforms

    @property
    def scale(self) -> ScaleUniform:
        return ScaleUniform.window(*self.size)

    @property
    def affine(self) -> ComplexAffineUniform:
        return ComplexAffineUniform.from_complex(alpha=self.alpha, delta=self.delta)

    @property
    def blocks(self) -> UniformBlocks:
        return UniformBlocks(
            scale=self.scale,
            affine=self.affine,
            iterations=IterationUniform(self.iterations),
        )

    @property
    def vertices(self) -> list[Vertex]:
        return quad(*self.size)

    # -------------------------------------------|
    # Messages

    def _anchor(self, message: object) -> complex:
        """The pixel cursor of a message when present, else its plane coordinate"""
        if (message.x is not None) and (message.y is not None):
            return self.plane(message.x, message.y)
        return complex(message.u, message.v)

    def handle(self, message: object) -> None:
        if isinstance(message, Message.Mouse.Drag):
            shift = complex(message.du, message.dv) or self.plane_delta(message.dx, message.dy)
            self.pan(shift.real, shift.imag)

        elif isinstance(message, Message.Mouse.Scroll):
            self.zoom(ZOOM_STEP*message.dy, anchor=self._anchor(message))
            logger.debug(f"Zoom {self.magnification:.6g}x")

        elif isinstance(message, Message.Mouse.Rotate):
            self.rotate(message.angle, anchor=self._anchor(message))
            logger.debug(f"Rotation {self.rotation:.2f}°")

        elif isinstance(message, Message.Window.Resize):
            self.size = message.size
            logger.debug(f"Resized view to {self.size}")

        elif isinstance(message, Message.Keyboard.KeyDown):
            if (message.key == Key.Home):
                logger.info("(Home) Resetting the view")
                self.reset()
            elif (message.key == Key.PageUp):
                self.iterations = max(1, self.iterations*2)
                logger.info(f"(PgUp) Iterations set to {self.iterations}")
            elif (message.key == Key.PageDown):
                self.iterations = self.iterations//2
                logger.info(f"(PgDn) Iterations set to {self.iterations}")

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_plane_coordinates(self):
        view = FractalView(size=(200, 100))
        assert view.plane(0, 0) == complex(-2, 1)
        assert view.plane(200, 100) == complex(2, -1)
        assert view.plane(100, 50) == 0
        assert view.plane_delta(50, 25) == complex(1, -0.5)

    def test_matches_quad_coordinates(self):
        view = FractalView(size=(320, 240))
        for vertex in view.vertices:
            x, y, _ = vertex.position
            assert view.plane(x, y) == complex(*vertex.coord)

    def test_reset(self):
        view = FractalView().pan(0.3, 0.1).zoom(3).rotate(1.0)
        view.reset()
        assert (view.alpha, view.delta) == (DEFAULT_ALPHA, DEFAULT_DELTA)

    def test_pan_follows_cursor(self):
        view = FractalView(alpha=0.5j, delta=1+1j)
        before = view.point(0.2+0.3j)
        view.pan(0.1, -0.4)
        assert cmath.isclose(view.point(0.2+0.3j + complex(0.1, -0.4)), before)

    def test_zoom_keeps_anchor(self):
        view = FractalView()
        anchor = complex(0.7, -0.2)
        before = view.point(anchor)
        view.zoom(2.0, anchor=anchor)
        assert cmath.isclose(view.point(anchor), before)
        assert math.isclose(view.magnification, 4.0)
        view.zoom(-2.0, anchor=anchor)
        assert math.isclose(view.magnification, 1.0)

    def test_rotate_keeps_anchor(self):
        view = FractalView()
        anchor = complex(-0.4, 0.9)
        before = view.point(anchor)
        view.rotate(math.pi/2, anchor=anchor)
        assert cmath.isclose(view.point(anchor), before)
        assert math.isclose(view.rotation, 90.0)
        assert math.isclose(view.magnification, 1.0)

    def test_look(self):
        import pytest
        view = FractalView().look(center=-0.75+0.1j, zoom=10, rotation=45)
        assert view.delta == -0.75+0.1j
        assert math.isclose(view.magnification, 10)
        assert math.isclose(view.rotation, 45)
        assert view.point(0) == -0.75+0.1j
        with pytest.raises(ValueError):
            view.look(0, zoom=0)

    def test_uniforms(self):
        view = FractalView(alpha=2-1j, delta=0.25j, iterations=100, size=(64, 32))
        blocks = view.blocks
        assert blocks.affine.alpha == (2.0, -1.0)
        assert blocks.affine.delta == (0.0, 0.25)
        assert blocks.iterations.iterations == 100
        assert blocks.scale == ScaleUniform.window(64, 32)

    def test_location(self):
        label = FractalView().location()
        assert label.startswith("Center: -0.5000000000000000 +0.0000000000000000i")
        assert "Zoom: 1x" in label

    def test_iteration_bounds(self):
        assert FractalView(iterations=-4).iterations == 0
        assert FractalView(iterations=10**9).iterations == MAX_ITERATIONS

    def test_invalid_size(self):
        import pytest
        with pytest.raises(ValueError):
            FractalView(size=(0, 100))

    def test_messages(self):
        view = FractalView(size=(100, 100))
        view.handle(Message.Window.Resize(width=300, height=150))
        assert view.size == (300, 150)

        view.handle(Message.Mouse.Scroll(dy=4, u=0.5, v=0.5))
        assert math.isclose(view.magnification, 2.0)

        view.handle(Message.Mouse.Rotate(angle=math.pi, u=0.0, v=0.0))
        assert math.isclose(abs(view.rotation), 180.0)

        delta = view.delta
        view.handle(Message.Mouse.Drag(du=0.2, dv=0.0))
        assert cmath.isclose(view.delta, delta - view.alpha*0.2)

        view.handle(Message.Keyboard.KeyDown(key=Key.PageUp))
        assert view.iterations == 128
        view.handle(Message.Keyboard.KeyDown(key=Key.PageDown))
        view.handle(Message.Keyboard.KeyDown(key=Key.PageDown))
        assert view.iterations == 32

        view.handle(Message.Keyboard.KeyDown(key=Key.Home))
        assert (view.alpha, view.delta) == (DEFAULT_ALPHA, DEFAULT_DELTA)

    def test_pixel_messages(self):
        view = FractalView(size=(100, 100))
        view.handle(Message.Mouse.Drag(dx=10, dy=0))
        assert cmath.isclose(view.delta, DEFAULT_DELTA - DEFAULT_ALPHA*0.2)

        # The point under the cursor stays there
        before = view.point(view.plane(25, 75))
        view.handle(Message.Mouse.Scroll(dy=4, x=25, y=75))
        assert cmath.isclose(view.point(view.plane(25, 75)), before)
        assert math.isclose(view.magnification, 2.0)

        before = view.point(view.plane(80, 10))
        view.handle(Message.Mouse.Rotate(angle=math.pi/2, x=80, y=10))
        assert cmath.isclose(view.point(view.plane(80, 10)), before)
        assert math.isclose(view.rotation, 90.0)
