"""Map tool-reported file references onto files in a workspace."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Sequence

_SKIP_DIRS = frozenset({"target", "node_modules"})


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PathResolution:
    status: ResolutionStatus
    candidates: tuple[Path, ...] = ()

    @property
    def path(self) -> Path | None:
        if self.status is ResolutionStatus.RESOLVED:
            return self.candidates[0]
        return None

    def prefer(self, root: str | os.PathLike[str]) -> PathResolution:
        """Narrow an ambiguous result to the one candidate under ``root``.

        Returns ``self`` unchanged unless exactly one candidate lies there.
        """
        if self.status is not ResolutionStatus.AMBIGUOUS:
            return self
        base = _normalize(Path(root))
        inside = [c for c in self.candidates if _is_within(c, base)]
        if len(inside) == 1:
            return PathResolution(ResolutionStatus.RESOLVED, (inside[0],))
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "candidates": [str(c) for c in self.candidates]}


def _normalize(path: Path) -> Path:
    return Path(os.path.normpath(os.path.abspath(path)))


def _is_within(path: Path, base: Path) -> bool:
    try:
        path.relative_to(base)
    except ValueError:
        return False
    return True


def _exact_case(root: Path, rel_parts: Sequence[str]) -> bool:
    """True when every component below ``root`` exists with exactly this spelling."""
    current = root
    for part in rel_parts:
        if part in ("", "."):
            continue
        if part == "..":
            current = current.parent
            continue
        try:
            names = os.listdir(current)
        except OSError:
            return False
        if part not in names:
            return False
        current = current / part
    return True


def resolve(
    file_ref: str,
    workspace_root: str | os.PathLike[str] | None,
    package_roots: Iterable[str | os.PathLike[str]] = (),
) -> PathResolution:
    """Resolve ``file_ref`` against the workspace and package roots.

    Only path existence is consulted. More than one surviving candidate is
    reported as ambiguous rather than picked.
    """
    ref = Path(file_ref)
    if ref.is_absolute():
        path = _normalize(ref)
        if path.exists():
            return PathResolution(ResolutionStatus.RESOLVED, (path,))
        return PathResolution(ResolutionStatus.NOT_FOUND)

    roots: list[Path] = []
    if workspace_root is not None:
        roots.append(_normalize(Path(workspace_root)))
    roots.extend(_normalize(Path(r)) for r in package_roots)

    exact: list[Path] = []
    loose: list[Path] = []
    seen: set[Path] = set()
    for root in roots:
        candidate = _normalize(root / ref)
        if candidate in seen:
            continue
        seen.add(candidate)
        if not candidate.exists():
            continue
        if _exact_case(root, ref.parts):
            exact.append(candidate)
        else:
            loose.append(candidate)

    matches = exact or loose
    if not matches:
        return PathResolution(ResolutionStatus.NOT_FOUND)
    if len(matches) == 1:
        return PathResolution(ResolutionStatus.RESOLVED, (matches[0],))
    return PathResolution(ResolutionStatus.AMBIGUOUS, tuple(matches))


class PathResolver:
    """``resolve`` bound to one workspace, memoized per file reference."""

    def __init__(self, workspace_root: str | os.PathLike[str] | None, package_roots: Iterable[str | os.PathLike[str]] = ()):
        self.workspace_root = Path(workspace_root) if workspace_root is not None else None
        self.package_roots = tuple(Path(r) for r in package_roots)
        self._cache: dict[str, PathResolution] = {}

    def resolve(self, file_ref: str) -> PathResolution:
        cached = self._cache.get(file_ref)
        if cached is None:
            cached = resolve(file_ref, self.workspace_root, self.package_roots)
            self._cache[file_ref] = cached
        return cached


@dataclass(frozen=True)
class WorkspaceLayout:
    workspace_root: Path
    package_roots: tuple[Path, ...]

    @classmethod
    def from_cargo_metadata(cls, data: str | bytes | dict[str, Any]) -> WorkspaceLayout:
        """Read ``cargo metadata --format-version 1`` output."""
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        if not isinstance(data, dict) or not isinstance(data.get("workspace_root"), str):
            raise ValueError("cargo metadata is missing workspace_root")
        members = data.get("workspace_members")
        member_ids = set(members) if isinstance(members, list) else None
        roots: list[Path] = []
        for package in data.get("packages") or []:
            if not isinstance(package, dict):
                continue
            if member_ids is not None and package.get("id") not in member_ids:
                continue
            manifest = package.get("manifest_path")
            if isinstance(manifest, str):
                root = Path(manifest).parent
                if root not in roots:
                    roots.append(root)
        return cls(Path(data["workspace_root"]), tuple(roots))


def discover_package_roots(workspace_root: str | os.PathLike[str]) -> list[Path]:
    """Directories under ``workspace_root`` holding a ``Cargo.toml``."""
    roots: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(workspace_root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        if "Cargo.toml" in filenames:
            roots.append(Path(dirpath))
    return roots
