from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Annotated, Optional, Union

import numpy as np
from attrs import Factory, define, field
from cyclopts import App as Cyclopts
from cyclopts import Parameter

import mandelflow
from mandelflow import logger
from mandelflow.pipeline import Backend, render_cpu
from mandelflow.raster import Framebuffer, default_workers
from mandelflow.shader import ShaderProgram
from mandelflow.view import FractalView


def parse_complex(value: Union[str, complex]) -> complex:
    """Accept both '-0.75+0.1i' and Python's '-0.75+0.1j' spellings"""
    if isinstance(value, str):
        try:
            return complex(value.replace(" ", "").replace("i", "j"))
        except ValueError:
            raise ValueError(f"Invalid complex number '{value}'") from None
    return complex(value)


@define
class MandelbrotScene:
    """Render the Mandelbrot set with the two stage escape time pipeline"""

    view: FractalView = Factory(FractalView)
    """Host navigation state, source of the uniform blocks"""

    backend: Backend = field(factory=Backend.infer, converter=Backend)
    """Where the stages run, the CPU reference or an OpenGL 4 context"""

    workers: int = field(factory=default_workers, converter=lambda x: max(1, int(x)))
    """Thread pool size of the CPU backend"""

    shader: Optional[ShaderProgram] = None
    """GLSL program of the GPU backend, compiled on the first frame"""

    def __attrs_post_init__(self) -> None:
        self.cli.help = type(self).__doc__
        self.cli.command(self.main, name="render")

    def __del__(self):
        self.release()

    def release(self) -> None:
        with contextlib.suppress(AttributeError):
            self.shader.release()
        with contextlib.suppress(AttributeError):
            self.shader.opengl.release()
        self.shader = None

    # -------------------------------------------------------------------------|
    # Rendering

    def relay(self, message: object) -> MandelbrotScene:
        """Send an input message to the view"""
        self.view.handle(message)
        return self

    def render(self) -> np.ndarray:
        """Draw one frame as float32 RGBA of shape (height, width, 4), row 0 on top"""
        framebuffer = Framebuffer(*self.view.size)

        if (self.backend == Backend.GPU):
            if (self.shader is None):
                self.shader = ShaderProgram().compile()
            return self.shader.render(self.view.vertices, self.view.blocks, framebuffer)

        return render_cpu(self.view.vertices, self.view.blocks, framebuffer, workers=self.workers)

    def screenshot(self) -> np.ndarray:
        """Render a frame and quantize it to uint8 RGBA"""
        return (np.clip(self.render(), 0.0, 1.0) * 255).round().astype(np.uint8)

    def save(self, path: Path) -> Path:
        from PIL import Image
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving frame to ({path})")
        Image.fromarray(self.screenshot()).save(path)
        return path

    # -------------------------------------------------------------------------|
    # Commands

    cli: Cyclopts = field(
        factory=lambda: Cyclopts(
            result_action="return_value",
            version=mandelflow.__version__,
            help_flags=["--help"],
        ),
        repr=False
    )

    def main(self, *,
        width: Annotated[int, Parameter(
            help="Width of the rendered image",
            group="🔴 Basic", name=("--width", "-w"))] = 1920,

        height: Annotated[int, Parameter(
            help="Height of the rendered image",
            group="🔴 Basic", name=("--height", "-h"))] = 1080,

        iterations: Annotated[int, Parameter(
            help="Escape time iteration budget (0 renders black)",
            group="🟡 Quality", name=("--iterations", "-i"))] = 64,

        center: Annotated[str, Parameter(
            help="Complex plane point at the image center (Examples: '-0.5', '-0.743+0.131i')",
            group="🟢 View", name=("--center", "-c"), allow_leading_hyphen=True)] = "-0.5",

        zoom: Annotated[float, Parameter(
            help="Magnification, 1 fits the whole set vertically",
            group="🟢 View", name=("--zoom", "-z"))] = 1.0,

        rotation: Annotated[float, Parameter(
            help="Rotation of the view in degrees",
            group="🟢 View", name=("--rotation", "-r"))] = 0.0,

        backend: Annotated[Optional[str], Parameter(
            help="Either 'cpu' or 'gpu' (None to keep, default from MANDELFLOW_BACKEND or cpu)",
            group="🔵 Special", name=("--backend", "-b"))] = None,

        workers: Annotated[Optional[int], Parameter(
            help="Threads of the CPU backend (None to keep, default from MANDELFLOW_WORKERS or cores)",
            group="🔵 Special", name="--workers")] = None,

        output: Annotated[Path, Parameter(
            help="Output image file name and format",
            group="🔵 Special", name=("--output", "-o"))] = Path("mandelbrot.png"),
    ) -> Path:
        """Render a single frame to an image file"""
        self.backend = (backend or self.backend)
        self.workers = (workers or self.workers)
        self.view.size = (width, height)
        self.view.iterations = iterations
        self.view.look(center=parse_complex(center), zoom=zoom, rotation=rotation)
        logger.info(f"Rendering {self.view.size} with the {self.backend.value} backend")
        logger.info(self.view.location())
        return self.save(output)

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_parse_complex(self):
        import pytest
        assert parse_complex("-0.743+0.131i") == complex(-0.743, 0.131)
        assert parse_complex("0.25j") == 0.25j
        assert parse_complex(" -2 ") == -2
        with pytest.raises(ValueError):
            parse_complex("north")

    def test_backend_from_string(self):
        import pytest
        assert MandelbrotScene(backend="cpu").backend is Backend.CPU
        assert MandelbrotScene(backend="CPU").backend is Backend.CPU
        assert MandelbrotScene(backend="GPU").backend is Backend.GPU
        with pytest.raises(ValueError):
            MandelbrotScene(backend="metal")

    def test_render_cpu(self):
        scene = MandelbrotScene(backend="cpu", workers=2)
        scene.view.size = (48, 32)
        frame = scene.render()
        assert frame.shape == (32, 48, 4)
        assert (frame[..., 3] == 1.0).all()

    def test_relay(self):
        from mandelflow.message import Message
        scene = MandelbrotScene(backend="cpu")
        scene.relay(Message.Window.Resize(width=20, height=10))
        assert scene.render().shape == (10, 20, 4)

    def test_screenshot(self):
        scene = MandelbrotScene(backend="cpu", view=FractalView(size=(16, 16), iterations=0))
        image = scene.screenshot()
        assert image.dtype == np.uint8
        assert (image == (0, 0, 0, 255)).all()

    def test_save(self, tmp_path):
        from PIL import Image
        scene = MandelbrotScene(backend="cpu", view=FractalView(size=(24, 12)))
        path = scene.save(tmp_path/"frames"/"frame.png")
        with Image.open(path) as image:
            assert image.size == (24, 12)
            assert image.mode == "RGBA"

    def test_cli_render(self, tmp_path):
        scene = MandelbrotScene(backend="cpu")
        output = tmp_path/"zoomed.png"
        result = scene.cli([
            "render", "-w", "32", "-h", "16", "-i", "40",
            "--center=-0.743+0.131i", "--zoom", "50", "--rotation", "30",
            "-o", str(output),
        ])
        assert result == output
        assert output.exists()
        assert scene.view.size == (32, 16)
        assert scene.view.iterations == 40
        assert scene.view.delta == complex(-0.743, 0.131)
