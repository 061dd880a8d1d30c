"""Streaming ANSI escape sequence tokenizer.

Splits a raw byte stream into events:
  Text("hello"), SgrParams((1, 31), "m"), OtherEscape(b"\\x1b[2K")

Chunks may be cut anywhere, including inside an escape sequence or inside
a multi-byte UTF-8 character; the tokenizer carries the partial state into
the next ``feed`` call.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import Union

ESC = 0x1B
BEL = 0x07
CAN = 0x18
SUB = 0x1A

_MAX_PARAM_BYTES = 64
_MAX_OSC_BYTES = 4096
_U16_MAX = 0xFFFF

# C0 controls and DEL are not printable; newline and tab are kept.
_DROPPED_CONTROLS = bytes(c for c in range(0x20) if c not in (0x09, 0x0A)) + b"\x7f"


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class SgrParams:
    params: tuple[int, ...]
    final: str = "m"


@dataclass(frozen=True)
class OtherEscape:
    raw: bytes


Event = Union[Text, SgrParams, OtherEscape]


class _State(Enum):
    GROUND = "ground"
    ESCAPE = "escape"
    CSI = "csi"
    OSC = "osc"
    OSC_ESC = "osc_esc"


def _is_param_byte(b: int) -> bool:
    return 0x30 <= b <= 0x3F


def _is_intermediate_byte(b: int) -> bool:
    return 0x20 <= b <= 0x2F


def _is_final_byte(b: int) -> bool:
    return 0x40 <= b <= 0x7E


_CONTROL_TABLE = dict.fromkeys(_DROPPED_CONTROLS)


def strip_controls(text: str) -> str:
    """Drop the control characters the tokenizer never emits as text."""
    return text.translate(_CONTROL_TABLE)


def parse_sgr_params(param_bytes: bytes) -> tuple[int, ...] | None:
    """Parse ``1;31`` style parameter text; None if it is not plain SGR."""
    params = []
    for part in param_bytes.split(b";"):
        if not part:
            params.append(0)
        elif part.isdigit():
            params.append(min(int(part), _U16_MAX))
        else:
            return None
    return tuple(params)


class Tokenizer:
    """Byte-level escape sequence state machine."""

    def __init__(self) -> None:
        self._state = _State.GROUND
        self._seq = bytearray()  # bytes of the sequence in progress, ESC excluded
        self._intermediate = False
        self._text = bytearray()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._events: list[Event] = []

    @property
    def in_sequence(self) -> bool:
        return self._state is not _State.GROUND

    def feed(self, data: bytes) -> list[Event]:
        """Consume one chunk and return the events it completed."""
        i = 0
        n = len(data)
        while i < n:
            if self._state is _State.GROUND:
                esc = data.find(b"\x1b", i)
                if esc < 0:
                    self._text += data[i:]
                    break
                self._text += data[i:esc]
                self._begin_escape()
                i = esc + 1
                continue
            b = data[i]
            if not self._step(b):
                # Aborted sequence: reprocess this byte in the ground state.
                continue
            i += 1
        self._emit_text(final=False)
        return self._take()

    def flush(self) -> list[Event]:
        """End of stream: drop any partial sequence, decode held bytes."""
        self._state = _State.GROUND
        self._seq.clear()
        self._emit_text(final=True)
        return self._take()

    def _take(self) -> list[Event]:
        events, self._events = self._events, []
        return events

    def _emit_text(self, final: bool) -> None:
        text = self._decoder.decode(bytes(self._text).translate(None, _DROPPED_CONTROLS), final)
        self._text.clear()
        if final:
            self._decoder.reset()
        if not text:
            return
        if self._events and isinstance(self._events[-1], Text):
            self._events[-1] = Text(self._events[-1].text + text)
        else:
            self._events.append(Text(text))

    def _begin_escape(self) -> None:
        # A multi-byte character cut short by ESC can never complete.
        self._emit_text(final=True)
        self._state = _State.ESCAPE
        self._seq.clear()
        self._intermediate = False

    def _finish(self, event: Event) -> None:
        self._events.append(event)
        self._state = _State.GROUND
        self._seq.clear()

    def _abort(self) -> None:
        """Give up on the current sequence and keep its bytes as text."""
        self._text += self._seq
        self._seq.clear()
        self._state = _State.GROUND

    def _step(self, b: int) -> bool:
        """Advance one byte inside a sequence; False means the byte was not consumed."""
        state = self._state
        if state is _State.ESCAPE:
            if b == ESC:
                if self._seq:
                    self._abort()
                    return False
                self._begin_escape()
            elif not self._seq and b == ord("["):
                self._seq.append(b)
                self._state = _State.CSI
            elif not self._seq and b == ord("]"):
                self._seq.append(b)
                self._state = _State.OSC
            elif _is_intermediate_byte(b):
                self._seq.append(b)
                if len(self._seq) > _MAX_PARAM_BYTES:
                    self._abort()
            elif b < 0x20 or b >= 0x7F:
                self._abort()
                return False
            else:
                self._seq.append(b)
                self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
            return True

        if state is _State.CSI:
            if _is_final_byte(b):
                param_bytes = bytes(self._seq[1:])
                params = parse_sgr_params(param_bytes) if b == ord("m") else None
                if params is not None:
                    self._finish(SgrParams(params, "m"))
                else:
                    self._seq.append(b)
                    self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
                return True
            if _is_param_byte(b) and not self._intermediate:
                self._seq.append(b)
            elif _is_intermediate_byte(b):
                self._intermediate = True
                self._seq.append(b)
            else:
                self._abort()
                return False
            if len(self._seq) > _MAX_PARAM_BYTES:
                self._abort()
            return True

        if state is _State.OSC:
            if b == BEL:
                self._seq.append(b)
                self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
            elif b == ESC:
                self._state = _State.OSC_ESC
            elif b in (CAN, SUB):
                self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
            elif len(self._seq) < _MAX_OSC_BYTES:
                self._seq.append(b)
            else:
                self._abort()
                return False
            return True

        # OSC_ESC: ESC \ is the string terminator
        if b == ord("\\"):
            self._seq += b"\x1b\\"
            self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
            return True
        # Anything else ends the OSC and starts a new escape.
        self._finish(OtherEscape(b"\x1b" + bytes(self._seq)))
        self._state = _State.ESCAPE
        self._intermediate = False
        return False
