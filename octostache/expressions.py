"""Symbol paths and filter chains.

A symbol path identifies a value using dotted/bracketed notation, e.g.
``Octopus.Action[Name].Foo``. This would classically be represented using
nested property expressions, but in this small language a flat path is more
convenient for the evaluator to walk.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Position:
    """Where a node started in the template source."""
    offset: int
    line: int
    column: int

    def __str__(self) -> str:
        return f"line {self.line}, column {self.column}"


@dataclass(frozen=True)
class Identifier:
    text: str
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Indexer:
    index: str
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.index:
            raise ValueError("Indexer requires a non-empty index")

    def __str__(self) -> str:
        return f"[{self.index}]"


SymbolExpressionStep = Union[Identifier, Indexer]


@dataclass(frozen=True)
class SymbolExpression:
    steps: Tuple[SymbolExpressionStep, ...]
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        # accept any iterable of steps but store a tuple
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ValueError("SymbolExpression requires at least one step")
        if not isinstance(self.steps[0], Identifier):
            raise ValueError(
                f"SymbolExpression must start with an identifier, got {self.steps[0]!r}"
            )

    @property
    def root(self) -> Identifier:
        """The leading identifier, e.g. ``Octopus`` in ``Octopus.Action[Name]``."""
        return self.steps[0]

    def __str__(self) -> str:
        parts = []
        join = ""
        for step in self.steps:
            if isinstance(step, Identifier):
                parts.append(join)
            parts.append(str(step))
            join = "."
        return "".join(parts)


@dataclass(frozen=True)
class FunctionCallExpression:
    """One pipeline stage: ``argument | function``."""
    is_filter: bool
    function: Identifier
    argument: "ContentExpression"
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.argument} | {self.function}"


ContentExpression = Union[SymbolExpression, FunctionCallExpression]


def fold_filters(subject: SymbolExpression, filters) -> ContentExpression:
    """Fold ``subject | f | g`` into ``call(g, call(f, subject))``."""
    expression: ContentExpression = subject
    for name in filters:
        expression = FunctionCallExpression(
            is_filter=True, function=name, argument=expression, position=name.position
        )
    return expression


def try_parse_symbol_path(path: str) -> Tuple[bool, Optional[SymbolExpression]]:
    """Parse a standalone symbol path such as ``Octopus.Action[Name].Foo``.

    Applies only the symbol rule of the template grammar; the whole input must
    be consumed.

    Returns:
        Tuple of (success, expression). expression is None on failure.
    """
    from .errors import TemplateParseError
    from .parsing import parse_symbol_path

    try:
        return True, parse_symbol_path(path)
    except TemplateParseError:
        return False, None
