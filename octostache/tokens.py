"""Template token model.

A parsed template is a flat tuple of tokens. Block tokens (conditionals and
repetitions) hold their own nested token tuples, so the evaluator can walk the
tree without ever looking at source text again.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple, Union

from .expressions import ContentExpression, Identifier, Position, SymbolExpression


@dataclass(frozen=True)
class TextToken:
    """Literal text, already unescaped (``##{`` arrives here as ``#{``)."""
    fragments: Tuple[str, ...]
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "fragments", tuple(self.fragments))

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class SubstitutionToken:
    expression: ContentExpression
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"#{{{self.expression}}}"


@dataclass(frozen=True)
class ConditionalToken:
    """``#{if X}…#{/if}`` fills truthy; ``#{unless X}…#{/unless}`` fills falsy.

    ``negated`` records an ``unless`` opener, so an empty ``unless`` block
    still reads as one.
    """
    token: SymbolExpression
    truthy: Tuple["TemplateToken", ...] = ()
    falsy: Tuple["TemplateToken", ...] = ()
    negated: bool = False
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "truthy", tuple(self.truthy))
        object.__setattr__(self, "falsy", tuple(self.falsy))
        if self.truthy and self.falsy:
            raise ValueError("ConditionalToken branches are mutually exclusive")
        if self.falsy:
            object.__setattr__(self, "negated", True)
        elif self.negated and self.truthy:
            raise ValueError("An unless block has no truthy branch")

    @property
    def keyword(self) -> str:
        return "unless" if self.negated else "if"

    def __str__(self) -> str:
        body = "".join(str(t) for t in (self.falsy or self.truthy))
        return f"#{{{self.keyword} {self.token}}}{body}#{{/{self.keyword}}}"


@dataclass(frozen=True)
class RepetitionToken:
    collection: SymbolExpression
    enumerator: Identifier
    template: Tuple["TemplateToken", ...] = ()
    position: Optional[Position] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "template", tuple(self.template))

    def __str__(self) -> str:
        body = "".join(str(t) for t in self.template)
        return f"#{{each {self.enumerator} in {self.collection}}}{body}#{{/each}}"


TemplateToken = Union[TextToken, SubstitutionToken, ConditionalToken, RepetitionToken]


class Template:
    """An immutable sequence of parsed tokens."""

    __slots__ = ("_tokens",)

    def __init__(self, tokens=()):
        object.__setattr__(self, "_tokens", tuple(tokens))

    def __setattr__(self, name, value):
        raise AttributeError("Template is immutable")

    @property
    def tokens(self) -> Tuple[TemplateToken, ...]:
        return self._tokens

    def __iter__(self) -> Iterator[TemplateToken]:
        return iter(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __getitem__(self, index):
        return self._tokens[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, Template):
            return self._tokens == other._tokens
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._tokens)

    def __str__(self) -> str:
        return "".join(str(t) for t in self._tokens)

    def __repr__(self) -> str:
        return f"Template({list(self._tokens)!r})"
