"""Incremental build-output pipeline.

Feeds raw chunks of a build tool's combined output through the tokenizer,
the SGR style state and the run accumulator, pulls diagnostics out of the
same stream, resolves their paths, and keeps both results in one
character-offset space.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence, Union

from ansi_parser import Event, SgrParams, Text, Tokenizer, strip_controls
from diagnostics import (
    BlockScanner,
    DiagnosticExtractor,
    ParsedRecord,
    RawDiagnostic,
    Severity,
    match_location,
    parse_record,
    style_rendered,
    synthesize_rendered,
)
from path_resolver import PathResolution, PathResolver, WorkspaceLayout
from sgr_style import DEFAULT_STYLE, StyleAttributes, apply_sgr
from style_runs import RunAccumulator, StyleRun

logger = logging.getLogger(__name__)

_MAX_RECORD_BYTES = 4 * 1024 * 1024

PathLike = Union[str, os.PathLike]
PackageRoots = Union[Sequence[PathLike], Callable[[Path], Sequence[PathLike]]]


class PipelineState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    FINISHED = "finished"


class InvalidPipelineState(RuntimeError):
    """The pipeline was driven out of order (a bug in the caller)."""


@dataclass(frozen=True)
class PipelineConfig:
    workspace_root: Path | None = None
    package_roots: PackageRoots = ()

    def resolved_package_roots(self) -> tuple[Path, ...]:
        roots = self.package_roots
        if callable(roots):
            if self.workspace_root is None:
                return ()
            roots = roots(Path(self.workspace_root))
        return tuple(Path(r) for r in roots)

    @classmethod
    def from_cargo_metadata(cls, data: str | bytes | dict[str, Any]) -> PipelineConfig:
        layout = WorkspaceLayout.from_cargo_metadata(data)
        return cls(workspace_root=layout.workspace_root, package_roots=layout.package_roots)


@dataclass(frozen=True)
class ResolvedDiagnostic:
    severity: Severity
    message: str
    file_ref: str
    line: int
    column: int
    span_len: int | None = None
    code: str | None = None
    manifest_path: str | None = None
    resolution: PathResolution | None = None
    text_range: tuple[int, int] | None = None
    link_range: tuple[int, int] | None = None

    @classmethod
    def from_raw(
        cls,
        raw: RawDiagnostic,
        resolution: PathResolution | None,
        text_range: tuple[int, int] | None = None,
        link_range: tuple[int, int] | None = None,
    ) -> ResolvedDiagnostic:
        return cls(
            severity=raw.severity,
            message=raw.message,
            file_ref=raw.file_ref,
            line=raw.line,
            column=raw.column,
            span_len=raw.span_len,
            code=raw.code,
            manifest_path=raw.manifest_path,
            resolution=resolution,
            text_range=text_range,
            link_range=link_range,
        )

    @property
    def absolute_path(self) -> Path | None:
        return self.resolution.path if self.resolution is not None else None

    def to_dict(self) -> dict[str, Any]:
        path = self.absolute_path
        return {
            "severity": self.severity.value,
            "message": self.message,
            "file": self.file_ref,
            "line": self.line,
            "column": self.column,
            "spanLen": self.span_len,
            "code": self.code,
            "path": str(path) if path is not None else None,
            "resolution": self.resolution.to_dict() if self.resolution is not None else None,
            "textRange": list(self.text_range) if self.text_range else None,
            "linkRange": list(self.link_range) if self.link_range else None,
        }


@dataclass(frozen=True)
class StyledLine:
    text: str
    start_offset: int
    runs: tuple[dict[str, Any], ...]
    links: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class DocumentStyling:
    runs: tuple[StyleRun, ...] = ()
    diagnostics: tuple[ResolvedDiagnostic, ...] = ()
    build_success: bool | None = None

    @property
    def text(self) -> str:
        return "".join(run.text for run in self.runs)

    def runs_between(self, start: int, end: int) -> list[StyleRun]:
        """Runs overlapping the half-open range ``[start, end)``."""
        return [r for r in self.runs if r.start_offset < end and r.end_offset > start]

    def diagnostic_at(self, offset: int) -> ResolvedDiagnostic | None:
        """The located diagnostic a click at ``offset`` should jump to."""
        for diag in self.diagnostics:
            if diag.link_range and diag.link_range[0] <= offset < diag.link_range[1]:
                return diag
        for diag in self.diagnostics:
            if diag.file_ref and diag.text_range and diag.text_range[0] <= offset < diag.text_range[1]:
                return diag
        return None

    def to_lines(self) -> list[StyledLine]:
        """Split into lines of compact run dicts, offsets relative to each line."""
        text = self.text
        lines: list[StyledLine] = []
        runs = self.runs
        run_idx = 0
        start = 0
        while start < len(text):
            nl = text.find("\n", start)
            end = len(text) if nl < 0 else nl
            if end > start and text[end - 1] == "\r":
                end -= 1
            while run_idx < len(runs) and runs[run_idx].end_offset <= start:
                run_idx += 1
            line_runs = []
            j = run_idx
            while j < len(runs) and runs[j].start_offset < end:
                s = max(runs[j].start_offset, start)
                e = min(runs[j].end_offset, end)
                if e > s:
                    line_runs.append(runs[j].attributes.to_run(text[s:e]))
                j += 1
            links = []
            for diag in self.diagnostics:
                if diag.link_range is None:
                    continue
                ls, le = diag.link_range
                if ls < end and le > start:
                    links.append({
                        "start": max(ls, start) - start,
                        "end": min(le, end) - start,
                        "file": diag.file_ref,
                        "line": diag.line,
                        "column": diag.column,
                        "severity": diag.severity.value,
                    })
            lines.append(StyledLine(text[start:end], start, tuple(line_runs), tuple(links)))
            if nl < 0:
                break
            start = nl + 1
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "runs": [run.to_run() for run in self.runs],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "buildSuccess": self.build_success,
        }


@dataclass
class ParserState:
    """Per-stream styling state; lives from ``start`` until the stream ends."""

    tokenizer: Tokenizer = field(default_factory=Tokenizer)
    style: StyleAttributes = DEFAULT_STYLE
    accumulator: RunAccumulator = field(default_factory=RunAccumulator)


class _LineMode(Enum):
    START = "start"
    RECORD = "record"
    TEXT = "text"


class BuildOutputPipeline:
    """Coordinator for one build output stream.

    ``feed`` must not be called concurrently on one instance; use one
    pipeline per stream.
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        self._state = PipelineState.IDLE
        self._parser: ParserState | None = None
        self._resolver: PathResolver | None = None
        self._scanner = BlockScanner()
        self._extractor = DiagnosticExtractor()
        self._diagnostics: list[ResolvedDiagnostic] = []
        self._build_success: bool | None = None
        self._result: DocumentStyling | None = None

        self._line_mode = _LineMode.START
        self._record_line = bytearray()
        self._visible: list[str] = []
        self._visible_start = 0
        self._capture: list[tuple[str, int]] | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def result(self) -> DocumentStyling | None:
        """The final document once finished, else None."""
        return self._result

    def _require(self, expected: PipelineState, action: str) -> None:
        if self._state is not expected:
            raise InvalidPipelineState(f"cannot {action} while {self._state.value}")

    def start(self) -> None:
        self._require(PipelineState.IDLE, "start")
        self._parser = ParserState()
        self._resolver = PathResolver(self.config.workspace_root, self.config.resolved_package_roots())
        self._state = PipelineState.STREAMING

    def feed(self, chunk: bytes) -> None:
        """Consume one chunk of raw output."""
        self._require(PipelineState.STREAMING, "feed")
        i = 0
        n = len(chunk)
        while i < n:
            if self._line_mode is _LineMode.START:
                assert self._parser is not None
                if chunk[i] == ord("{") and not self._parser.tokenizer.in_sequence:
                    self._line_mode = _LineMode.RECORD
                else:
                    self._line_mode = _LineMode.TEXT
            nl = chunk.find(b"\n", i)
            end = n if nl < 0 else nl + 1
            piece = chunk[i:end]
            if self._line_mode is _LineMode.RECORD:
                self._record_line += piece
                # Over the cap the line is text, whether or not its newline has arrived.
                if len(self._record_line) > _MAX_RECORD_BYTES:
                    self._feed_text(bytes(self._record_line))
                    self._record_line.clear()
                    self._line_mode = _LineMode.TEXT
                elif nl >= 0:
                    self._complete_record_line()
            else:
                self._feed_text(piece)
            if nl >= 0:
                self._line_mode = _LineMode.START
            i = end

    def snapshot(self) -> DocumentStyling:
        """Everything seen so far; not final until ``finish``."""
        if self._result is not None:
            return self._result
        runs = self._parser.accumulator.snapshot() if self._parser is not None else ()
        return DocumentStyling(runs, tuple(self._diagnostics), self._build_success)

    def finish(self) -> DocumentStyling:
        """Signal end of stream and return the completed document."""
        self._require(PipelineState.STREAMING, "finish")
        self._state = PipelineState.DRAINING
        assert self._parser is not None
        if self._record_line:
            self._complete_record_line()
        self._apply(self._parser.tokenizer.flush())
        line = "".join(self._visible)
        self._visible = []
        if line:
            self._complete_visible_line(line, self._visible_start)
        for hit in self._scanner.flush():
            self._add(hit.diagnostic, hit.text_range, hit.link_range)
        runs = self._parser.accumulator.finish()
        self._result = DocumentStyling(runs, tuple(self._diagnostics), self._build_success)
        self._parser = None
        self._state = PipelineState.FINISHED
        return self._result

    def close(self) -> None:
        """Abandon the stream; whatever was complete stays readable via ``snapshot``."""
        if self._state is PipelineState.FINISHED:
            return
        self._result = self.snapshot()
        self._parser = None
        self._record_line.clear()
        self._visible = []
        self._state = PipelineState.FINISHED

    def _complete_record_line(self) -> None:
        raw = bytes(self._record_line)
        self._record_line.clear()
        record = parse_record(raw.decode("utf-8", errors="replace"))
        if record is None:
            self._feed_text(raw)
            return
        self._handle_record(record)

    def _handle_record(self, record: ParsedRecord) -> None:
        if record.build_success is not None:
            self._build_success = record.build_success
        if not record.diagnostics:
            return
        assert self._parser is not None
        rendered = record.rendered or synthesize_rendered(record.diagnostics[0])
        if not rendered.endswith("\n"):
            rendered += "\n"
        start = self._parser.accumulator.offset
        primary = record.diagnostics[0]
        self._capture = []
        try:
            if "\x1b" in rendered:
                self._feed_text(rendered.encode("utf-8"))
            else:
                # No colors of its own (e.g. plain --message-format=json); color it like rustc.
                self._push_styled(style_rendered(strip_controls(rendered), primary.severity, primary.code))
            captured = self._capture
        finally:
            self._capture = None
        text_range = (start, self._parser.accumulator.offset)
        for diag in record.diagnostics:
            self._add(diag, text_range, self._find_link(diag, captured))

    @staticmethod
    def _find_link(diag: RawDiagnostic, lines: list[tuple[str, int]]) -> tuple[int, int] | None:
        if not diag.has_location:
            return None
        for line, line_start in lines:
            loc = match_location(line.rstrip("\r"))
            if loc is None:
                continue
            if loc.file_ref == diag.file_ref and loc.line == diag.line:
                return (line_start + loc.start, line_start + loc.end)
        return None

    def _push_styled(self, segments: Iterable[tuple[str, StyleAttributes]]) -> None:
        parser = self._parser
        assert parser is not None
        for text, attrs in segments:
            start = parser.accumulator.offset
            parser.accumulator.push(text, attrs)
            self._split_visible(text, start)

    def _feed_text(self, data: bytes) -> None:
        assert self._parser is not None
        self._apply(self._parser.tokenizer.feed(data))

    def _apply(self, events: Iterable[Event]) -> None:
        parser = self._parser
        assert parser is not None
        for event in events:
            if isinstance(event, Text):
                start = parser.accumulator.offset
                parser.accumulator.push(event.text, parser.style)
                self._split_visible(event.text, start)
            elif isinstance(event, SgrParams):
                parser.style = apply_sgr(parser.style, event.params)
            # OtherEscape: cursor movement, titles and the like are dropped.

    def _split_visible(self, text: str, offset: int) -> None:
        pos = 0
        while True:
            nl = text.find("\n", pos)
            if nl < 0:
                if pos < len(text):
                    self._visible.append(text[pos:])
                return
            self._visible.append(text[pos:nl])
            line = "".join(self._visible)
            self._visible = []
            self._complete_visible_line(line, self._visible_start)
            self._visible_start = offset + nl + 1
            pos = nl + 1

    def _complete_visible_line(self, line: str, start: int) -> None:
        if self._capture is not None:
            self._capture.append((line, start))
            return
        for hit in self._scanner.feed_line(line, start):
            self._add(hit.diagnostic, hit.text_range, hit.link_range)

    def _add(
        self,
        diag: RawDiagnostic,
        text_range: tuple[int, int] | None,
        link_range: tuple[int, int] | None,
    ) -> None:
        if not self._extractor.accept(diag):
            return
        resolution = None
        if diag.has_location and self._resolver is not None:
            resolution = self._resolver.resolve(diag.file_ref)
        self._diagnostics.append(ResolvedDiagnostic.from_raw(diag, resolution, text_range, link_range))


def render_build_output(
    data: bytes | Iterable[bytes],
    config: PipelineConfig | None = None,
) -> DocumentStyling:
    """Run a whole output through a fresh pipeline."""
    pipeline = BuildOutputPipeline(config)
    pipeline.start()
    if isinstance(data, (bytes, bytearray)):
        data = [bytes(data)]
    for chunk in data:
        pipeline.feed(chunk)
    return pipeline.finish()


async def feed_from_reader(
    pipeline: BuildOutputPipeline,
    reader: asyncio.StreamReader,
    chunk_size: int = 64 * 1024,
) -> DocumentStyling:
    """Drain ``reader`` into ``pipeline`` and finish it.

    This coroutine is the single consumer for the stream, so chunks reach
    ``feed`` one at a time.
    """
    if pipeline.state is PipelineState.IDLE:
        pipeline.start()
    try:
        while True:
            chunk = await reader.read(chunk_size)
            if not chunk:
                break
            pipeline.feed(chunk)
    except asyncio.CancelledError:
        pipeline.close()
        raise
    return pipeline.finish()
