from __future__ import annotations

import contextlib
import os
import re
import sys
import tempfile
import uuid as uuidlib
from collections import deque
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Self, Union

import moderngl
import numpy as np
import rich
from attrs import Factory, define
from ordered_set import OrderedSet
from rich.panel import Panel
from rich.syntax import Syntax

import mandelflow
from mandelflow import logger
from mandelflow.raster import Framebuffer
from mandelflow.uniforms import Binding, UniformBlocks, Vertex
from mandelflow.variable import (
    InVariable,
    LinearVariable,
    OutVariable,
    ShaderVariable,
    UniformBlock,
)
from mandelflow.vertex import attributes

DUMPS: Path = Path(tempfile.gettempdir())/"mandelflow"
"""Where the sources and errors of programs failing to compile are written"""


@define
class ShaderDumper:
    """Writes the sources of a program that failed to compile and points at the first error"""

    shader: ShaderProgram
    error: str
    vertex: str
    fragment: str

    context: int = 5
    """Lines shown around the faulty one"""

    # Nvidia "0(12) : error C1008: ..." and Mesa "0:12(3): error: ..." flavors
    _parser = re.compile(r"^0[\(:](\d+)\)?(?:\(\d+\))?\s*:\s*error\s*(\w*):\s*(.*)", re.MULTILINE)

    @property
    def stage(self) -> tuple[str, str]:
        """Name and source of the stage the driver complained about"""
        for name in ("fragment", "vertex"):
            if (f"{name}_shader" in self.error):
                return (name, getattr(self, name))
        return ("fragment", self.fragment)

    def excerpt(self, lineno: int) -> str:
        lines = self.stage[1].splitlines()
        first = max(1, lineno - self.context)
        last = min(len(lines), lineno + self.context)
        return "\n".join(
            f"({number:3d}) {'>' if (number == lineno) else '|'} {lines[number - 1]}"
            for number in range(first, last + 1)
        )

    def dump(self) -> Path:
        DUMPS.mkdir(parents=True, exist_ok=True)
        for suffix, text in ((".vert", self.vertex), (".frag", self.fragment), ("-error.md", self.error)):
            (DUMPS/f"{self.shader.uuid}{suffix}").write_text(text, encoding="utf-8")
        logger.error(f"Program {self.shader.uuid} failed to compile, sources dumped to {DUMPS}")

        if (match := self._parser.search(self.error)):
            lineno, code, message = match.groups()
            rich.print(Panel(
                Syntax(self.excerpt(int(lineno)), lexer="glsl"),
                title=f"({code or 'error'} at the {self.stage[0]} stage, Line {lineno}): {message}",
            ))

        return DUMPS

# ------------------------------------------------------------------------------------------------ #

@define
class ShaderProgram:
    """The vertex and fragment stages as a GLSL program, drawn offscreen with ModernGL"""

    version: int = 400
    """GLSL version, 400 is the first with double precision"""

    opengl: moderngl.Context = None
    """ModernGL Context, a standalone one is created on first compile if missing"""

    uuid: str = Factory(lambda: uuidlib.uuid4().hex[:8])
    """Identifier of the dumped sources on compile errors"""

    def __attrs_post_init__(self):
        self.vertex_variable(InVariable("vec3", "position", location=0))
        self.vertex_variable(InVariable("vec2", "coord", location=1))
        self.traverse_variable(LinearVariable("vec2", "planeCoord"))
        self.fragment_variable(OutVariable("vec4", "fragColor", location=0))

        self.vertex_block(UniformBlock("Scale", Binding.Scale).member("vec2", "scale"))
        self.fragment_block(UniformBlock("Affine", Binding.Affine)
            .member("dvec2", "alpha")
            .member("dvec2", "delta"))
        self.fragment_block(UniformBlock("Iterations", Binding.Iterations).member("int", "iterations"))

        self.vertex   = (mandelflow.resources/"shaders"/"vertex"/"mandelbrot.glsl")
        self.fragment = (mandelflow.resources/"shaders"/"fragment"/"mandelbrot.glsl")

    # # Variable handling

    vertex_variables: OrderedSet = Factory(OrderedSet)
    """Variables metaprogramming that will be added to the Vertex Shader"""

    fragment_variables: OrderedSet = Factory(OrderedSet)
    """Variables metaprogramming that will be added to the Fragment Shader"""

    def vertex_variable(self, variable: Union[ShaderVariable, UniformBlock]) -> None:
        self.vertex_variables.add(variable)

    def fragment_variable(self, variable: Union[ShaderVariable, UniformBlock]) -> None:
        self.fragment_variables.add(variable)

    def traverse_variable(self, variable: ShaderVariable) -> None:
        self.fragment_variable(variable.copy(direction="in"))
        self.vertex_variable(variable.copy(direction="out"))

    # # Uniform blocks

    blocks: dict[str, UniformBlock] = Factory(dict)
    """Every declared uniform block by name, bound to their reserved slot after compiling"""

    def vertex_block(self, block: UniformBlock) -> None:
        self.blocks[block.name] = block
        self.vertex_variable(block)

    def fragment_block(self, block: UniformBlock) -> None:
        self.blocks[block.name] = block
        self.fragment_variable(block)

    @property
    def vao_definition(self) -> tuple[str]:
        """Outputs: ("3f 2f", "position", "coord")"""
        sizes, names = [], []
        for variable in self.vertex_variables:
            if getattr(variable, "direction", None) == "in":
                sizes.append(variable.size_string)
                names.append(variable.name)
        return (" ".join(sizes), *names)

    # # Metaprogramming

    def _build_shader(self,
        content: Union[Path, str],
        variables: Iterable[Union[ShaderVariable, UniformBlock]],
        *, _type: str
    ) -> str:
        """Build the final shader from the contents provided"""
        separator: str = ("// " + "-"*96 + "|\n")
        code: deque[str] = deque()

        @contextlib.contextmanager
        def section(name: str=""):
            code.append(f"\n\n{separator}")
            code.append(f"// Metaprogramming ({name})\n")
            yield None

        # Must define version first; fixed headers
        code.append(f"#version {self.version} core")
        code.append(f"#define {_type}")

        with section("Variables"):
            code.extend(item.declaration for item in variables)

        with section("Content"):
            if isinstance(content, Path):
                code.append(content.read_text(encoding="utf-8"))
            else:
                code.append(str(content))

        return '\n'.join(filter(None, code))

    # # Vertex shader

    _vertex: Union[Path, str] = ""
    """The 'User Content' of the Vertex Shader, inserted after the Metaprogramming"""

    @property
    def vertex(self) -> str:
        return self._build_shader(self._vertex, self.vertex_variables, _type="VERTEX")

    @vertex.setter
    def vertex(self, value: Union[Path, str]):
        self._vertex = value

    # # Fragment shader

    _fragment: Union[Path, str] = ""
    """The 'User Content' of the Fragment Shader, inserted after the Metaprogramming"""

    @property
    def fragment(self) -> str:
        return self._build_shader(self._fragment, self.fragment_variables, _type="FRAGMENT")

    @fragment.setter
    def fragment(self, value: Union[Path, str]):
        self._fragment = value

    # # Rendering

    program: moderngl.Program = None
    """ModernGL 'Compiled Shaders' object"""

    buffers: dict[int, moderngl.Buffer] = Factory(dict)
    """Uniform buffer objects per binding slot"""

    def context(self) -> moderngl.Context:
        if (self.opengl is None):
            options = dict(standalone=True, require=self.version)

            # Linux: EGL allows true headless rendering with GPU acceleration
            if (sys.platform == "linux") and (os.getenv("EGL", "0") == "1"):
                options["backend"] = "egl"

            self.opengl = moderngl.create_context(**options)
            logger.info(f"OpenGL Renderer: {self.opengl.info.get('GL_RENDERER')}")
        return self.opengl

    def compile(self) -> Self:
        fragment = self.fragment
        vertex = self.vertex

        try:
            self.program = self.context().program(vertex_shader=vertex, fragment_shader=fragment)
        except moderngl.Error as error:
            ShaderDumper(
                shader=self,
                error=str(error),
                vertex=vertex,
                fragment=fragment
            ).dump()
            raise RuntimeError(f"Error compiling shaders of program {self.uuid}") from error

        # Bind every block to its reserved slot, with a buffer of its std140 size
        for name, block in self.blocks.items():
            if (member := self.program.get(name, None)) is None:
                logger.warning(f"Uniform block '{name}' was optimized out of program {self.uuid}")
                continue
            member.binding = int(block.binding)
            self.buffers[block.binding] = self.opengl.buffer(reserve=member.size)

        logger.info(f"Compiled program {self.uuid} (GLSL {self.version})")
        return self

    def bind(self, blocks: UniformBlocks) -> None:
        """Upload and bind the uniform blocks of the next draw"""
        if (self.program is None):
            raise RuntimeError("Shader hasn't been compiled yet")
        for uniform in blocks:
            if (buffer := self.buffers.get(uniform.binding)) is None:
                continue
            data = uniform.pack()
            buffer.write(data[:buffer.size])
            buffer.bind_to_uniform_block(int(uniform.binding))

    def render(self,
        vertices: Sequence[Vertex],
        blocks: UniformBlocks,
        framebuffer: Framebuffer,
    ) -> np.ndarray:
        """Draw a triangle strip, returns float32 RGBA of shape (height, width, 4), row 0 on top"""
        if (self.program is None):
            self.compile()

        self.bind(blocks)
        vbo = self.opengl.buffer(attributes(vertices).tobytes())
        vao = self.opengl.vertex_array(self.program, [(vbo, *self.vao_definition)])
        texture = self.opengl.texture(framebuffer.size, 4, dtype="f4")
        fbo = self.opengl.framebuffer(color_attachments=[texture])

        try:
            fbo.use()
            fbo.clear(0.0, 0.0, 0.0, 0.0)
            vao.render(moderngl.TRIANGLE_STRIP)
            data = fbo.read(components=4, dtype="f4")
        finally:
            for item in (fbo, texture, vao, vbo):
                item.release()

        width, height = framebuffer.size
        return np.flipud(np.frombuffer(data, dtype=np.float32).reshape(height, width, 4)).copy()

    def release(self) -> None:
        for buffer in self.buffers.values():
            buffer.release()
        self.buffers.clear()
        with contextlib.suppress(AttributeError):
            self.program.release()
        self.program = None

# ------------------------------------------------------------------------------------------------ #

class __pytest__:

    @staticmethod
    def opengl() -> moderngl.Context:
        import pytest
        try:
            return moderngl.create_context(standalone=True, require=400)
        except Exception as error:
            pytest.skip(f"No OpenGL 4.0 context available ({error})")

    @staticmethod
    def blocks(width: int, height: int, iterations: int, **affine) -> UniformBlocks:
        from mandelflow.uniforms import ComplexAffineUniform, IterationUniform, ScaleUniform
        return UniformBlocks(
            scale=ScaleUniform.window(width, height),
            affine=ComplexAffineUniform(**affine),
            iterations=IterationUniform(iterations),
        )

    def test_vertex_metaprogramming(self):
        vertex = ShaderProgram().vertex
        assert vertex.startswith("#version 400 core\n#define VERTEX")
        assert "layout(location=0) in vec3 position;" in vertex
        assert "layout(location=1) in vec2 coord;" in vertex
        assert "noperspective out vec2 planeCoord;" in vertex
        assert "layout(std140) uniform Scale { vec2 scale; };" in vertex
        assert "Affine" not in vertex

    def test_fragment_metaprogramming(self):
        fragment = ShaderProgram().fragment
        assert "noperspective in vec2 planeCoord;" in fragment
        assert "layout(location=0) out vec4 fragColor;" in fragment
        assert "layout(std140) uniform Affine { dvec2 alpha; dvec2 delta; };" in fragment
        assert "layout(std140) uniform Iterations { int iterations; };" in fragment
        assert "uniform Scale" not in fragment
        assert "precise double r2 = x*x + y*y;" in fragment
        assert "precise dvec2 c = dvec2(" in fragment

    def test_vao_definition(self):
        assert ShaderProgram().vao_definition == ("3f 2f", "position", "coord")

    def test_not_compiled(self):
        import pytest
        shader = ShaderProgram()
        with pytest.raises(RuntimeError):
            shader.bind(self.blocks(4, 4, 8))

    def test_dumper(self, monkeypatch, tmp_path):
        import mandelflow.shader
        monkeypatch.setattr(mandelflow.shader, "DUMPS", tmp_path)
        dumper = ShaderDumper(
            shader=ShaderProgram(),
            error="fragment_shader\n0(3) : error C1008: undefined variable \"x\"",
            vertex="void main() {}",
            fragment="a\nb\nc\nd\ne",
            context=1,
        )
        assert dumper.stage == ("fragment", "a\nb\nc\nd\ne")
        assert dumper.excerpt(3) == "(  2) | b\n(  3) > c\n(  4) | d"
        assert dumper.excerpt(1) == "(  1) > a\n(  2) | b"
        assert dumper.dump() == tmp_path
        assert (tmp_path/f"{dumper.shader.uuid}.frag").read_text() == dumper.fragment
        assert (tmp_path/f"{dumper.shader.uuid}-error.md").read_text() == dumper.error

    def test_compile_error(self):
        import pytest
        shader = ShaderProgram(opengl=self.opengl())
        shader.fragment = "void main() { fragColor = undefined_thing; }"
        with pytest.raises(RuntimeError):
            shader.compile()
        assert (DUMPS/f"{shader.uuid}.frag").exists()

    def test_matches_cpu(self):
        from mandelflow.pipeline import render_cpu
        from mandelflow.vertex import quad
        # Power of two sizes keep the interpolated plane coordinates exact dyadic values
        width, height, iterations = (64, 64, 80)
        vertices = quad(width, height)
        blocks = self.blocks(width, height, iterations, alpha=(0.9, 0.3), delta=(-0.6, 0.05))
        shader = ShaderProgram(opengl=self.opengl()).compile()
        gpu = shader.render(vertices, blocks, Framebuffer(width, height))
        cpu = render_cpu(vertices, blocks, Framebuffer(width, height))
        assert gpu.shape == cpu.shape
        assert (gpu[..., 3] == 1.0).all()

        # Escape indices back from the red channel, zero red is either index 0 or the budget
        gpu_index = np.rint(gpu[..., 0].astype(np.float64) * iterations)
        cpu_index = np.rint(cpu[..., 0].astype(np.float64) * iterations)
        bounded = (lambda index: np.where(index == 0, iterations, index))
        gap = np.minimum(
            np.abs(gpu_index - cpu_index),
            np.abs(bounded(gpu_index) - bounded(cpu_index)),
        )
        assert (gap <= 1).all()
        assert np.isclose(gpu, cpu, atol=1e-6).all(axis=-1).mean() > 0.99

    def test_zero_iterations_gpu(self):
        from mandelflow.vertex import quad
        shader = ShaderProgram(opengl=self.opengl())
        frame = shader.render(quad(16, 8), self.blocks(16, 8, 0), Framebuffer(16, 8))
        assert (frame == (0.0, 0.0, 0.0, 1.0)).all()
