from typing import Literal, Optional, Self

from attrs import Factory, define, evolve

DECLARATION_ORDER = (
    "layout",
    "interpolation",
    "direction",
    "type",
    "name"
)

GlslType = Literal[
    "int",
    "vec2",
    "vec3",
    "vec4",
    "dvec2",
]

GlslDirection = Literal[
    "in",
    "out",
]

GlslInterpolation = Literal[
    "flat",
    "smooth",
    "noperspective",
]

# ------------------------------------------------------------------------------------------------ #

@define(eq=False)
class ShaderVariable:
    type: GlslType
    name: str
    direction: Optional[GlslDirection] = None
    interpolation: Optional[GlslInterpolation] = None
    location: Optional[int] = None

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: Self) -> bool:
        return (self.name == other.name)

    def copy(self, **changes) -> Self:
        return evolve(self, **changes)

    @property
    def layout(self) -> Optional[str]:
        if (self.location is not None):
            return f"layout(location={self.location})"
        return None

    @property
    def size_string(self) -> str:
        return dict(
            vec2="2f",
            vec3="3f",
        ).get(self.type)

    @property
    def declaration(self) -> str:
        parts = (getattr(self, key) for key in DECLARATION_ORDER)
        return " ".join(filter(None, parts)).strip() + ";"

# ------------------------------------------------------------------------------------------------ #

@define(eq=False)
class InVariable(ShaderVariable):
    direction: GlslDirection = "in"

@define(eq=False)
class OutVariable(ShaderVariable):
    direction: GlslDirection = "out"

@define(eq=False)
class LinearVariable(ShaderVariable):
    """A varying interpolated linearly in screen space, without the perspective divide"""
    interpolation: GlslInterpolation = "noperspective"

# ------------------------------------------------------------------------------------------------ #

@define(eq=False)
class UniformBlock:
    """A std140 interface block, bound to a reserved binding slot by the host"""
    name: str
    binding: int
    members: list[ShaderVariable] = Factory(list)

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: Self) -> bool:
        return (self.name == other.name)

    def member(self, type: GlslType, name: str) -> Self:
        self.members.append(ShaderVariable(type, name))
        return self

    @property
    def declaration(self) -> str:
        body = " ".join(member.declaration for member in self.members)
        return f"layout(std140) uniform {self.name} {{ {body} }};"

# ------------------------------------------------------------------------------------------------ #

class __pytest__:
    def test_declaration_order(self):
        variable = LinearVariable("vec2", "planeCoord", direction="out", location=0)
        assert variable.declaration == "layout(location=0) noperspective out vec2 planeCoord;"

    def test_copy_changes_direction(self):
        variable = LinearVariable("vec2", "planeCoord", direction="out")
        other = variable.copy(direction="in")
        assert other.declaration == "noperspective in vec2 planeCoord;"
        assert variable.direction == "out"
        assert (variable == other)

    def test_size_string(self):
        assert InVariable("vec3", "position").size_string == "3f"
        assert InVariable("vec2", "coord").size_string == "2f"

    def test_uniform_block(self):
        block = UniformBlock("Affine", binding=1).member("dvec2", "alpha").member("dvec2", "delta")
        assert block.declaration == "layout(std140) uniform Affine { dvec2 alpha; dvec2 delta; };"
