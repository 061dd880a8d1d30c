"""SGR (Select Graphic Rendition) style state.

Colors are a tagged union of ``NamedColor``, ``PaletteColor`` and
``RgbColor``; ``StyleAttributes`` is an immutable value folded forward by
``apply_sgr`` one parameter list at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Sequence, Union

logger = logging.getLogger(__name__)

_COLOR_NAMES = [
    "black", "red", "green", "yellow", "blue", "magenta", "cyan", "white",
    "brBlack", "brRed", "brGreen", "brYellow", "brBlue", "brMagenta", "brCyan", "brWhite",
]

# xterm defaults for the 16 named colors
_NAMED_RGB = [
    (0x00, 0x00, 0x00), (0xcd, 0x00, 0x00), (0x00, 0xcd, 0x00), (0xcd, 0xcd, 0x00),
    (0x00, 0x00, 0xee), (0xcd, 0x00, 0xcd), (0x00, 0xcd, 0xcd), (0xe5, 0xe5, 0xe5),
    (0x7f, 0x7f, 0x7f), (0xff, 0x00, 0x00), (0x00, 0xff, 0x00), (0xff, 0xff, 0x00),
    (0x5c, 0x5c, 0xff), (0xff, 0x00, 0xff), (0x00, 0xff, 0xff), (0xff, 0xff, 0xff),
]


@dataclass(frozen=True)
class NamedColor:
    """One of the 16 terminal colors: 0-7 standard, 8-15 bright."""

    index: int

    @property
    def name(self) -> str:
        return _COLOR_NAMES[self.index]

    def rgb(self) -> tuple[int, int, int]:
        return _NAMED_RGB[self.index]

    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class PaletteColor:
    """An index into the xterm 256-color palette."""

    index: int

    def rgb(self) -> tuple[int, int, int]:
        n = self.index
        if n < 16:
            return _NAMED_RGB[n]
        if n < 232:
            n -= 16
            return ((n // 36) * 51, ((n % 36) // 6) * 51, (n % 6) * 51)
        v = 8 + (n - 232) * 10
        return (v, v, v)

    def label(self) -> str:
        # Low palette entries are the named colors.
        if self.index < 16:
            return _COLOR_NAMES[self.index]
        return _hex(self.rgb())


@dataclass(frozen=True)
class RgbColor:
    r: int
    g: int
    b: int

    def rgb(self) -> tuple[int, int, int]:
        return (self.r, self.g, self.b)

    def label(self) -> str:
        return _hex(self.rgb())


Color = Union[NamedColor, PaletteColor, RgbColor]


def _hex(rgb: tuple[int, int, int]) -> str:
    r, g, b = rgb
    return f"#{r:02x}{g:02x}{b:02x}"


def color_hex(color: Color) -> str:
    """Render any color variant as a ``#rrggbb`` string."""
    return _hex(color.rgb())


class Underline(str, Enum):
    NONE = "none"
    SINGLE = "single"
    DOUBLE = "double"


@dataclass(frozen=True)
class StyleAttributes:
    fg: Color | None = None
    bg: Color | None = None
    bold: bool = False
    dim: bool = False
    italic: bool = False
    underline: Underline = Underline.NONE
    strikethrough: bool = False
    inverse: bool = False
    hidden: bool = False

    @property
    def is_default(self) -> bool:
        return self == DEFAULT_STYLE

    def to_run(self, text: str) -> dict[str, Any]:
        """Build a compact run dict, omitting falsy fields."""
        run: dict[str, Any] = {"t": text}
        fg = self.fg.label() if self.fg is not None else None
        bg = self.bg.label() if self.bg is not None else None
        # SGR 7 (reverse video): swap fg and bg for rendering
        if self.inverse:
            fg, bg = bg, fg
            if fg is None:
                fg = "_defBg"
            if bg is None:
                bg = "_defFg"
        if fg:
            run["fg"] = fg
        if bg:
            run["bg"] = bg
        if self.bold:
            run["b"] = True
        if self.dim:
            run["d"] = True
        if self.italic:
            run["i"] = True
        if self.underline is Underline.SINGLE:
            run["u"] = True
        elif self.underline is Underline.DOUBLE:
            run["u"] = "double"
        if self.strikethrough:
            run["s"] = True
        if self.hidden:
            run["h"] = True
        return run


DEFAULT_STYLE = StyleAttributes()

_BASIC_FG = {p: NamedColor(p - 30) for p in range(30, 38)}
_BASIC_FG.update({p: NamedColor(p - 90 + 8) for p in range(90, 98)})
_BASIC_BG = {p: NamedColor(p - 40) for p in range(40, 48)}
_BASIC_BG.update({p: NamedColor(p - 100 + 8) for p in range(100, 108)})

# Simple on/off codes: code -> (field, value)
_TOGGLES: dict[int, tuple[str, Any]] = {
    1: ("bold", True),
    2: ("dim", True),
    3: ("italic", True),
    4: ("underline", Underline.SINGLE),
    7: ("inverse", True),
    8: ("hidden", True),
    9: ("strikethrough", True),
    21: ("underline", Underline.DOUBLE),
    23: ("italic", False),
    24: ("underline", Underline.NONE),
    27: ("inverse", False),
    28: ("hidden", False),
    29: ("strikethrough", False),
    39: ("fg", None),
    49: ("bg", None),
}


def _extended_color(params: Sequence[int], i: int) -> tuple[Color | None, int]:
    """Read the color following a 38/48 at ``params[i]``.

    Returns the color (None when unusable) and how many parameters after
    ``i`` were consumed.
    """
    remaining = len(params) - i - 1
    if remaining < 1:
        return None, 0
    mode = params[i + 1]
    if mode == 5:
        if remaining < 2:
            return None, remaining
        n = params[i + 2]
        return (PaletteColor(n) if n <= 255 else None), 2
    if mode == 2:
        if remaining < 4:
            return None, remaining
        r, g, b = params[i + 2], params[i + 3], params[i + 4]
        if max(r, g, b) > 255:
            return None, 4
        return RgbColor(r, g, b), 4
    logger.debug("unsupported extended color mode %d", mode)
    return None, 1


def apply_sgr(attrs: StyleAttributes, params: Sequence[int]) -> StyleAttributes:
    """Return the attributes that result from applying one SGR parameter list."""
    if not params:
        return DEFAULT_STYLE
    changes: dict[str, Any] = {}
    i = 0
    while i < len(params):
        p = params[i]
        if p == 0:
            attrs = DEFAULT_STYLE
            changes = {}
        elif p in _TOGGLES:
            field, value = _TOGGLES[p]
            changes[field] = value
        elif p == 22:
            changes["bold"] = False
            changes["dim"] = False
        elif p in _BASIC_FG:
            changes["fg"] = _BASIC_FG[p]
        elif p in _BASIC_BG:
            changes["bg"] = _BASIC_BG[p]
        elif p in (38, 48):
            color, consumed = _extended_color(params, i)
            if color is not None:
                changes["fg" if p == 38 else "bg"] = color
            i += consumed
        i += 1
    if not changes:
        return attrs
    return replace(attrs, **changes)
