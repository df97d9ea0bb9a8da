import importlib.metadata
from pathlib import Path

from loguru import logger

__version__ = importlib.metadata.version(__package__)

__about__ = "🌀 Escape-time Mandelbrot pipeline with a GPU and a bit-exact CPU backend"

resources: Path = Path(__file__).parent/"resources"
"""Bundled GLSL sources of the vertex and fragment stages"""

__all__ = ("logger", "resources", "__version__", "__about__")
