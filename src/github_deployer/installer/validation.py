"""Checks that an extracted tree is a deployable unit.

A ``ValidationPolicy`` holds an ordered list of accepted shapes. The
first shape that matches wins; if none match the archive is rejected
with every shape that was checked, so the operator can see what the
engine was looking for.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from github_deployer.errors import IncompatibleArchiveError

# Header markers sit near the top of the file.
_HEADER_BYTES = 8192


def _has_marker(path: Path, marker: str) -> bool:
    try:
        with path.open("rb") as fh:
            head = fh.read(_HEADER_BYTES)
    except OSError:
        return False
    return marker in head.decode("utf-8", errors="replace")


class ArchiveShape(Protocol):
    """One accepted layout for a deployable unit."""

    @property
    def description(self) -> str: ...

    def matches(self, root: Path) -> bool: ...


@dataclass(frozen=True)
class HeaderFileShape:
    """Any top-level file matching ``pattern`` that carries ``marker``."""

    pattern: str
    marker: str

    @property
    def description(self) -> str:
        return f"a top-level {self.pattern} file containing '{self.marker}'"

    def matches(self, root: Path) -> bool:
        return any(p.is_file() and _has_marker(p, self.marker) for p in root.glob(self.pattern))


@dataclass(frozen=True)
class SingleHeaderFileShape:
    """A specific top-level file that carries ``marker``."""

    filename: str
    marker: str

    @property
    def description(self) -> str:
        return f"a top-level {self.filename} containing '{self.marker}'"

    def matches(self, root: Path) -> bool:
        path = root / self.filename
        return path.is_file() and _has_marker(path, self.marker)


@dataclass(frozen=True)
class DirectoryWithIndexShape:
    """A top-level ``directory`` next to a top-level ``index`` file."""

    directory: str
    index: str

    @property
    def description(self) -> str:
        return f"a {self.directory}/ directory together with {self.index}"

    def matches(self, root: Path) -> bool:
        return (root / self.directory).is_dir() and (root / self.index).is_file()


class ValidationPolicy:
    """Ordered set of shapes an extracted tree may take."""

    def __init__(self, shapes: list[ArchiveShape]) -> None:
        if not shapes:
            raise ValueError("A validation policy needs at least one shape")
        self._shapes = list(shapes)

    @property
    def shapes(self) -> list[ArchiveShape]:
        return list(self._shapes)

    def validate(self, root: Path) -> ArchiveShape:
        """Return the first matching shape or raise IncompatibleArchiveError."""
        for shape in self._shapes:
            if shape.matches(root):
                return shape
        checked = [shape.description for shape in self._shapes]
        raise IncompatibleArchiveError(
            "The archive does not look like a deployable unit; expected "
            + ", or ".join(checked),
            checked=checked,
        )


def wordpress_policy() -> ValidationPolicy:
    """Plugin header, theme stylesheet, or block-theme templates."""
    return ValidationPolicy(
        [
            HeaderFileShape("*.php", "Plugin Name:"),
            SingleHeaderFileShape("style.css", "Theme Name:"),
            DirectoryWithIndexShape("templates", "index.html"),
        ]
    )
