"""Exception classes for octostache."""

from typing import FrozenSet, Iterable, Optional

from .expressions import Position


class TemplateParseError(Exception):
    """User-friendly description of why a template could not be parsed.

    Carries the position of the failure and the set of token kinds that would
    have been accepted there.
    """

    def __init__(
        self,
        message: str,
        position: Optional[Position] = None,
        expected: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
    ):
        self.message = message
        self.position = position
        self.expected: FrozenSet[str] = frozenset(expected or ())
        self.source = source
        super().__init__(message)

    @property
    def line_number(self) -> Optional[int]:
        return self.position.line if self.position else None

    def _context(self) -> str:
        if self.source is None or self.position is None:
            return ""
        lines = self.source.split("\n")
        if self.position.line > len(lines):
            return ""
        prefix = f"Line {self.position.line}: "
        pointer = " " * (len(prefix) + self.position.column - 1) + "^"
        return f"{prefix}{lines[self.position.line - 1]}\n{pointer}"

    def __str__(self):
        parts = [f"Error: {self.message}"]
        if self.position:
            parts.append(f"  At: {self.position}")
        if self.expected:
            parts.append(f"  Expected: {', '.join(sorted(self.expected))}")
        context = self._context()
        if context:
            parts.append(context)
        return "\n".join(parts)

    def __reduce__(self):
        return (
            self.__class__,
            (self.message, self.position, self.expected, self.source),
        )
