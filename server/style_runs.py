"""Coalesce styled text fragments into contiguous runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sgr_style import DEFAULT_STYLE, StyleAttributes


@dataclass(frozen=True)
class StyleRun:
    text: str
    attributes: StyleAttributes
    start_offset: int
    end_offset: int

    def to_run(self) -> dict[str, Any]:
        run = self.attributes.to_run(self.text)
        run["o"] = [self.start_offset, self.end_offset]
        return run


class RunAccumulator:
    """Stamps text with a style and merges neighbours that share it.

    Offsets count decoded characters from the start of the stream.
    """

    def __init__(self) -> None:
        self._runs: list[StyleRun] = []
        self._pending: list[str] = []
        self._pending_style: StyleAttributes = DEFAULT_STYLE
        self._pending_start = 0
        self._offset = 0

    @property
    def offset(self) -> int:
        return self._offset

    def push(self, text: str, attributes: StyleAttributes) -> None:
        if not text:
            return
        if self._pending and attributes != self._pending_style:
            self._close_pending()
        if not self._pending:
            self._pending_style = attributes
            self._pending_start = self._offset
        self._pending.append(text)
        self._offset += len(text)

    def _pending_run(self) -> StyleRun | None:
        if not self._pending:
            return None
        return StyleRun(
            text="".join(self._pending),
            attributes=self._pending_style,
            start_offset=self._pending_start,
            end_offset=self._offset,
        )

    def _close_pending(self) -> None:
        run = self._pending_run()
        if run is not None:
            self._runs.append(run)
        self._pending = []

    def snapshot(self) -> tuple[StyleRun, ...]:
        """Completed runs plus the run still being built."""
        run = self._pending_run()
        if run is None:
            return tuple(self._runs)
        return (*self._runs, run)

    def finish(self) -> tuple[StyleRun, ...]:
        self._close_pending()
        return tuple(self._runs)
