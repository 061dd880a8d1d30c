"""Build diagnostic extraction.

Two sources are understood:

* machine-readable records, one JSON object per line, as written by
  ``cargo build --message-format=json`` (and bare ``rustc
  --error-format=json`` diagnostics);
* human-readable blocks in the visible text::

      error[E0425]: cannot find value `x` in this scope
       --> src/main.rs:3:5

Everything here is best-effort: input that does not match is reported as
"not a diagnostic", never raised.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from itertools import groupby
from typing import Any, Iterable

from sgr_style import DEFAULT_STYLE, NamedColor, StyleAttributes

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"
    HELP = "help"


_LEVELS = {
    "error": Severity.ERROR,
    "error: internal compiler error": Severity.ERROR,
    "warning": Severity.WARNING,
    "note": Severity.NOTE,
    "failure-note": Severity.NOTE,
    "help": Severity.HELP,
}


def severity_from_level(level: Any) -> Severity:
    return _LEVELS.get(str(level).strip().lower(), Severity.NOTE)


@dataclass(frozen=True)
class RawDiagnostic:
    severity: Severity
    message: str
    file_ref: str = ""
    line: int = 0
    column: int = 0
    span_len: int | None = None
    code: str | None = None
    manifest_path: str | None = None

    @property
    def has_location(self) -> bool:
        return bool(self.file_ref)

    @property
    def dedup_key(self) -> tuple[str, int, int, str]:
        return (self.file_ref, self.line, self.column, self.message)

    def location_text(self) -> str:
        return f"{self.file_ref}:{self.line}:{self.column}"


@dataclass(frozen=True)
class ParsedRecord:
    """One recognised JSON line.

    ``diagnostics`` is empty for records that are not compiler messages
    (artifacts, build script output, the final build summary).
    """

    reason: str
    diagnostics: tuple[RawDiagnostic, ...] = ()
    rendered: str | None = None
    build_success: bool | None = None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    return 0


def _primary_span(spans: Any) -> dict[str, Any] | None:
    if not isinstance(spans, list):
        return None
    candidates = [s for s in spans if isinstance(s, dict)]
    for span in candidates:
        if span.get("is_primary"):
            return span
    return candidates[0] if candidates else None


def _diagnostic_from(obj: dict[str, Any], manifest_path: str | None) -> RawDiagnostic | None:
    message = obj.get("message")
    if not isinstance(message, str):
        return None
    code_obj = obj.get("code")
    code = code_obj.get("code") if isinstance(code_obj, dict) else None
    span = _primary_span(obj.get("spans"))
    file_ref, line, column, span_len = "", 0, 0, None
    if span is not None and isinstance(span.get("file_name"), str):
        file_ref = span["file_name"]
        line = _as_int(span.get("line_start"))
        column = _as_int(span.get("column_start"))
        start, end = span.get("byte_start"), span.get("byte_end")
        if isinstance(start, int) and isinstance(end, int) and end >= start:
            span_len = end - start
    return RawDiagnostic(
        severity=severity_from_level(obj.get("level", "")),
        message=message,
        file_ref=file_ref,
        line=line,
        column=column,
        span_len=span_len,
        code=code if isinstance(code, str) else None,
        manifest_path=manifest_path,
    )


def diagnostics_from_message(obj: dict[str, Any], manifest_path: str | None = None) -> list[RawDiagnostic]:
    """Top-level diagnostic plus any child (note/help) that points at source."""
    found: list[RawDiagnostic] = []
    top = _diagnostic_from(obj, manifest_path)
    if top is None:
        return found
    found.append(top)
    children = obj.get("children")
    if isinstance(children, list):
        for child in children:
            if not isinstance(child, dict) or not child.get("spans"):
                continue
            diag = _diagnostic_from(child, manifest_path)
            if diag is not None and diag.has_location:
                found.append(diag)
    return found


def synthesize_rendered(diag: RawDiagnostic) -> str:
    """Plain rustc-style text for a record that carried no rendering."""
    code = f"[{diag.code}]" if diag.code else ""
    text = f"{diag.severity.value}{code}: {diag.message}\n"
    if diag.has_location:
        text += f" --> {diag.location_text()}\n"
    return text


def parse_record(line: str) -> ParsedRecord | None:
    """Interpret one line of machine-readable build output.

    Returns None when the line is not a build record; such lines are plain
    text as far as the caller is concerned.
    """
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        obj = json.loads(stripped)
    except (ValueError, RecursionError):
        logger.debug("Non-JSON line starting with '{': %.80s", stripped)
        return None
    if not isinstance(obj, dict):
        return None

    if obj.get("$message_type") == "diagnostic" or ("reason" not in obj and "level" in obj and "spans" in obj):
        diags = diagnostics_from_message(obj)
        if not diags:
            return None
        rendered = obj.get("rendered")
        return ParsedRecord(
            reason="diagnostic",
            diagnostics=tuple(diags),
            rendered=rendered if isinstance(rendered, str) else None,
        )

    reason = obj.get("reason")
    if not isinstance(reason, str):
        return None
    if reason == "compiler-message":
        message = obj.get("message")
        if not isinstance(message, dict):
            return None
        manifest = obj.get("manifest_path")
        diags = diagnostics_from_message(message, manifest if isinstance(manifest, str) else None)
        if not diags:
            return None
        rendered = message.get("rendered")
        return ParsedRecord(
            reason=reason,
            diagnostics=tuple(diags),
            rendered=rendered if isinstance(rendered, str) else None,
        )
    if reason == "build-finished":
        success = obj.get("success")
        return ParsedRecord(reason=reason, build_success=success if isinstance(success, bool) else None)
    logger.debug("Ignoring build record with reason %r", reason)
    return ParsedRecord(reason=reason)


_HEADER_RE = re.compile(
    r"^(error|warning|note|help|failure-note)(?:\[([A-Za-z0-9_-]+)\])?: (.+?)\s*$"
)
_LOCATION_RE = re.compile(r"^\s*--> (?P<path>.+?):(?P<line>\d+):(?P<col>\d+)\s*$")


@dataclass(frozen=True)
class LocationMatch:
    file_ref: str
    line: int
    column: int
    start: int
    end: int


def match_location(line: str) -> LocationMatch | None:
    """Find a ``--> file:line:col`` pointer; start/end index the ``file:line:col`` text."""
    m = _LOCATION_RE.match(line)
    if m is None:
        return None
    return LocationMatch(
        file_ref=m.group("path"),
        line=int(m.group("line")),
        column=int(m.group("col")),
        start=m.start("path"),
        end=m.end("col"),
    )


_RED = NamedColor(1)
_YELLOW = NamedColor(3)
_BLUE = NamedColor(4)

StyledSegment = tuple[str, StyleAttributes]


def level_color(severity: Severity) -> NamedColor:
    return _RED if severity is Severity.ERROR else _YELLOW


def _paint(
    line: str, base: StyleAttributes, spans: Iterable[tuple[int, int, StyleAttributes]]
) -> list[StyledSegment]:
    styles = [base] * len(line)
    for start, end, attrs in spans:
        styles[start:end] = [attrs] * (end - start)
    segments: list[StyledSegment] = []
    pos = 0
    for attrs, group in groupby(styles):
        size = sum(1 for _ in group)
        segments.append((line[pos:pos + size], attrs))
        pos += size
    return segments


def style_rendered(text: str, severity: Severity, code: str | None = None) -> list[StyledSegment]:
    """Color plain rustc-style text the way rustc does on a terminal.

    The first line is the title: bold, with the level word and the error
    code in the level color (red for errors, yellow otherwise). A ``-->``
    arrow is blue. Source lines get a red gutter up to ``|``; a gutter with
    no line number points at the problem, so the rest of that line is bold
    in the level color. ``= note`` lines get a red ``=`` and a bold ``note``.
    Newlines are unstyled.
    """
    emphasis = StyleAttributes(fg=level_color(severity), bold=True)
    gutter = StyleAttributes(fg=_RED)
    segments: list[StyledSegment] = []
    for index, line in enumerate(text.split("\n")):
        if index:
            segments.append(("\n", DEFAULT_STYLE))
        if not line:
            continue
        if index == 0:
            spans = []
            for word in (severity.value, code):
                at = line.find(word) if word else -1
                if at >= 0:
                    spans.append((at, at + len(word), emphasis))
            segments += _paint(line, StyleAttributes(bold=True), spans)
            continue
        arrow = line.find("-->")
        bar = line.find("|")
        note = line.find("= note")
        if arrow >= 0 and not line[:arrow].strip():
            spans = [(arrow, arrow + 3, StyleAttributes(fg=_BLUE))]
        elif bar >= 0:
            split = bar + 1
            spans = [(0, split, gutter)]
            if not any(c.isdigit() for c in line[:split]):
                spans.append((split, len(line), emphasis))
        elif note >= 0:
            spans = [(0, note + 1, gutter), (note + 2, note + 6, StyleAttributes(bold=True))]
        else:
            spans = []
        segments += _paint(line, DEFAULT_STYLE, spans)
    return segments


@dataclass(frozen=True)
class ScannedDiagnostic:
    diagnostic: RawDiagnostic
    text_range: tuple[int, int]
    link_range: tuple[int, int] | None = None


@dataclass
class _PendingHeader:
    severity: Severity
    code: str | None
    message: str
    start: int
    end: int


class BlockScanner:
    """Find human-readable diagnostic blocks in visible text, line by line."""

    def __init__(self) -> None:
        self._pending: _PendingHeader | None = None

    def feed_line(self, line: str, start: int) -> list[ScannedDiagnostic]:
        """``line`` excludes its newline; ``start`` is its offset in the stream."""
        found: list[ScannedDiagnostic] = []
        line = line.rstrip("\r")
        pending = self._pending
        self._pending = None

        if pending is not None:
            loc = match_location(line)
            if loc is not None:
                diag = RawDiagnostic(
                    severity=pending.severity,
                    message=pending.message,
                    file_ref=loc.file_ref,
                    line=loc.line,
                    column=loc.column,
                    code=pending.code,
                )
                found.append(ScannedDiagnostic(
                    diagnostic=diag,
                    text_range=(pending.start, start + len(line)),
                    link_range=(start + loc.start, start + loc.end),
                ))
                return found
            found.append(self._informational(pending))

        m = _HEADER_RE.match(line)
        if m is not None:
            self._pending = _PendingHeader(
                severity=severity_from_level(m.group(1)),
                code=m.group(2),
                message=m.group(3),
                start=start,
                end=start + len(line),
            )
        return found

    def flush(self) -> list[ScannedDiagnostic]:
        pending, self._pending = self._pending, None
        if pending is None:
            return []
        return [self._informational(pending)]

    @staticmethod
    def _informational(pending: _PendingHeader) -> ScannedDiagnostic:
        diag = RawDiagnostic(severity=pending.severity, message=pending.message, code=pending.code)
        return ScannedDiagnostic(diagnostic=diag, text_range=(pending.start, pending.end))


@dataclass
class DiagnosticExtractor:
    """First-occurrence de-duplication across everything a stream reports."""

    _seen: set[tuple[str, int, int, str]] = field(default_factory=set)

    def accept(self, diag: RawDiagnostic) -> bool:
        key = diag.dedup_key
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def reset(self) -> None:
        self._seen.clear()
