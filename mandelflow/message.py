from enum import Enum
from typing import Optional

from attrs import define


class Key(Enum):
    """Keys the view reacts to, independent of any windowing library keymap"""
    Home     = "home"
    PageUp   = "page_up"
    PageDown = "page_down"


class Message:

    # # Mouse

    class Mouse:

        @define
        class Drag:
            # Real, pixels with y down
            dx: float = 0.0
            dy: float = 0.0

            # Plane coordinates, used when non zero
            du: float = 0.0
            dv: float = 0.0

        @define
        class Scroll:
            # Wheel notches
            dx: int = 0
            dy: int = 0

            # Real cursor position, the zoom anchor
            x: Optional[float] = None
            y: Optional[float] = None

            # Plane coordinate anchor, when no cursor is given
            u: float = 0.0
            v: float = 0.0

        @define
        class Rotate:
            # Radians, counter clockwise
            angle: float = 0.0

            # Real pivot
            x: Optional[float] = None
            y: Optional[float] = None

            # Plane coordinate pivot, when no cursor is given
            u: float = 0.0
            v: float = 0.0

    # # Window

    class Window:

        @define
        class Resize:
            width:  int = None
            height: int = None

            @property
            def size(self) -> tuple[int, int]:
                return self.width, self.height

    # # Keyboard

    class Keyboard:

        @define
        class KeyDown:
            key: Key = None
