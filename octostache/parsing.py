"""Grammar engine: turns template source into a Template of tokens.

The grammar lives in ``grammar.lark``. Lark produces a parse tree which
``TemplateTransformer`` converts into the immutable token model. Parse errors
from Lark are converted into ``TemplateParseError`` with the position and the
set of tokens that would have been accepted.
"""

import logging
import re
import sys
from importlib.resources import files
from pathlib import Path

from decouple import config as env_config
from lark import Lark, Transformer, Tree
from lark.exceptions import (UnexpectedCharacters, UnexpectedInput,
                             UnexpectedToken, VisitError)

from .errors import TemplateParseError
from .expressions import (Identifier, Indexer, Position, SymbolExpression,
                          fold_filters)
from .tokens import (ConditionalToken, RepetitionToken, SubstitutionToken,
                     Template, TextToken)

logger = logging.getLogger(__name__)

try:
    template_grammar = (files(__package__) / "grammar.lark").read_text(
        encoding="utf-8"
    )
except Exception:
    # fallback to relative path from current file
    grammar_path = Path(__file__).parent / "grammar.lark"
    template_grammar = grammar_path.read_text(encoding="utf-8")

MAX_NESTING_DEPTH = env_config("OCTOSTACHE_MAX_NESTING_DEPTH", default=64, cast=int)

BLOCK_RULES = ("conditional", "repetition")

# One unit of literal text, tried in order. Must agree with TEXT in grammar.lark.
TEXT_PIECE = re.compile(
    r"(?P<run>[^#]+)"
    r"|(?P<hash>#\Z|##(?=#\{))"
    r"|(?P<open>##\{)"
    r"|(?P<pair>#[^{])"
)

# How terminals are described to template authors in error messages
TERMINAL_DESCRIPTIONS = {
    "IF_OPEN": "'#{if'",
    "UNLESS_OPEN": "'#{unless'",
    "EACH_OPEN": "'#{each'",
    "SUBSTITUTION_OPEN": "'#{'",
    "IF_CLOSE": "'#{/if}'",
    "UNLESS_CLOSE": "'#{/unless}'",
    "EACH_CLOSE": "'#{/each}'",
    "IN": "'in'",
    "IDENT": "identifier",
    "INDEX": "index",
    "LBRACKET": "'['",
    "RSQB": "']'",
    "RBRACE": "'}'",
    "VBAR": "'|'",
    "_DOT": "'.'",
    "DOT": "'.'",
    "TEXT": "text",
    "$END": "end of template",
}

IGNORED_TERMINALS = {"WS"}
CLOSER_TERMINALS = ("IF_CLOSE", "UNLESS_CLOSE", "EACH_CLOSE")


def position_at(source: str, offset: int) -> Position:
    """Line/column (both 1-based) for a 0-based offset into ``source``."""
    offset = max(0, min(offset, len(source)))
    line = source.count("\n", 0, offset) + 1
    column = offset - (source.rfind("\n", 0, offset) + 1) + 1
    return Position(offset=offset, line=line, column=column)


def _token_position(token) -> Position:
    return Position(offset=token.start_pos, line=token.line, column=token.column)


def unescape_text(source: str, start: int, end: int) -> list:
    """Split ``source[start:end]`` into literal fragments, resolving ``#`` escapes.

    Matching runs against the whole source so the end-of-input and ``#{``
    lookaheads see the same context the lexer did.
    """
    fragments = []
    pos = start
    while pos < end:
        match = TEXT_PIECE.match(source, pos)
        if match is None:
            raise ValueError(f"Not literal text at offset {pos}")
        kind = match.lastgroup
        if kind == "hash":
            fragments.append("#")
        elif kind == "open":
            fragments.append("#{")
        else:
            fragments.append(match.group())
        pos = match.end()
    return fragments


class TemplateTransformer(Transformer):
    """Lark transformer that converts the parse tree into template tokens.

    Methods receive ``items`` containing child results. Anonymous terminals
    ("}", "|", "]") and underscore-prefixed ones (_DOT) are filtered by Lark,
    so the remaining Tokens are the openers, closers, IN and the text/name
    terminals, which supply positions.

    Whitespace inside a symbol path belongs to the identifiers it touches
    (``Foo .Bar`` is ``"Foo "`` then ``"Bar"``). Only whitespace next to the
    ``#{``/``}`` delimiters, a pipe or the ``in`` keyword is dropped. With
    ``whole_input`` the source is a bare path and nothing is dropped.

    A fresh transformer is built per parse because text unescaping and
    identifier whitespace need the source being parsed.
    """

    def __init__(self, source: str, whole_input: bool = False):
        super().__init__()
        self.source = source
        self.whole_input = whole_input

    def _name(self, token) -> Identifier:
        return Identifier(text=str(token).strip(), position=_token_position(token))

    def identifier(self, items):
        # raw IDENT token; the enclosing rule decides which whitespace is kept
        return items[0]

    def indexer(self, items):
        bracket, index = items
        return Indexer(index=str(index), position=_token_position(bracket))

    def _path_identifier(self, token, first: bool, last: bool) -> Identifier:
        start, end = token.start_pos, token.end_pos
        if not first or self.whole_input:
            while start > 0 and self.source[start - 1].isspace():
                start -= 1
        if last and not self.whole_input:
            end = start + len(self.source[start:end].rstrip())
        if start == token.start_pos:
            position = _token_position(token)
        else:
            position = position_at(self.source, start)
        return Identifier(text=self.source[start:end], position=position)

    def _check_after_indexer(self, indexer: Indexer, last: bool) -> None:
        """Reject whitespace between ``]`` and a following step, or trailing a bare path."""
        end = indexer.position.offset + len(indexer.index) + 2
        if end < len(self.source) and self.source[end].isspace():
            if self.whole_input or not last:
                raise TemplateParseError(
                    "Unexpected whitespace after ']'",
                    position=position_at(self.source, end),
                    source=self.source,
                )

    def symbol(self, items):
        steps = []
        last = len(items) - 1
        for i, item in enumerate(items):
            if isinstance(item, Indexer):
                self._check_after_indexer(item, i == last)
                steps.append(item)
            else:
                steps.append(self._path_identifier(item, i == 0, i == last))
        return SymbolExpression(steps, position=steps[0].position)

    def filter_name(self, items):
        return self._name(items[0])

    def filter_chain(self, items):
        subject, *filters = items
        return fold_filters(subject, filters)

    def substitution(self, items):
        opener, expression = items
        return SubstitutionToken(expression, position=_token_position(opener))

    def conditional(self, items):
        opener, expression, *body, _closer = items
        position = _token_position(opener)
        if opener.type == "IF_OPEN":
            return ConditionalToken(expression, truthy=body, position=position)
        return ConditionalToken(expression, falsy=body, negated=True, position=position)

    def repetition(self, items):
        opener, enumerator, _in, collection, *body, _closer = items
        return RepetitionToken(
            collection=collection,
            enumerator=self._name(enumerator),
            template=body,
            position=_token_position(opener),
        )

    def text(self, items):
        token = items[0]
        fragments = unescape_text(self.source, token.start_pos, token.end_pos)
        return TextToken(fragments, position=_token_position(token))

    def start(self, items):
        return Template(items)


# Module-level cached Lark parser (compiled once, reused for all parses)
_cached_lark = None


def _get_cached_lark():
    """Get or create the cached Lark parser.

    The compiled parser holds no per-parse state, so one instance serves every
    thread.
    """
    global _cached_lark
    if _cached_lark is None:
        _cached_lark = Lark(
            template_grammar,
            parser="lalr",
            lexer="contextual",
            start=["start", "symbol"],
            propagate_positions=True,
        )
    return _cached_lark


def _describe_expected(names) -> frozenset:
    return frozenset(
        TERMINAL_DESCRIPTIONS.get(name, name.lower())
        for name in (names or ())
        if name not in IGNORED_TERMINALS
    )


def _convert_lark_error(error: UnexpectedInput, source: str) -> TemplateParseError:
    """Convert a Lark error into a TemplateParseError with a readable message."""
    if isinstance(error, UnexpectedToken):
        token = error.token
        if token.type == "$END":
            position = position_at(source, len(source))
            message = "Unexpected end of template"
        else:
            position = position_at(source, token.start_pos)
            if token.type in CLOSER_TERMINALS:
                message = (
                    f"Unexpected {TERMINAL_DESCRIPTIONS[token.type]} "
                    "(block closer does not match an open block)"
                )
            else:
                # the fallback lexer may have matched a long terminal; show where it starts
                message = f"Unexpected character {str(token)[:1]!r}"
        expected = error.expected
    elif isinstance(error, UnexpectedCharacters):
        position = position_at(source, error.pos_in_stream)
        message = f"Unexpected character {error.char!r}"
        expected = error.allowed
    else:
        position = position_at(source, len(source))
        message = "Unexpected end of template"
        expected = getattr(error, "expected", None)

    return TemplateParseError(
        message, position=position, expected=_describe_expected(expected), source=source
    )


def _check_nesting(tree: Tree, source: str, max_depth: int) -> None:
    """Reject trees whose block nesting exceeds ``max_depth``.

    Walks iteratively, before the (recursive) transformer runs.
    """
    stack = [(tree, 0)]
    while stack:
        node, depth = stack.pop()
        if node.data in BLOCK_RULES:
            depth += 1
            if depth > max_depth:
                opener = node.children[0]
                raise TemplateParseError(
                    f"Blocks are nested more than {max_depth} levels deep",
                    position=_token_position(opener),
                    source=source,
                )
        stack.extend((child, depth) for child in node.children if isinstance(child, Tree))


def _too_deep(source: str) -> TemplateParseError:
    # max_depth was set above what the interpreter's recursion limit allows
    return TemplateParseError(
        f"Blocks are nested too deeply to build (recursion limit {sys.getrecursionlimit()})",
        source=source,
    )


def _run(source: str, start: str, max_depth: int = None):
    if not isinstance(source, str):
        raise TypeError(f"Template source must be a string, not {type(source).__name__}")

    try:
        tree = _get_cached_lark().parse(source, start=start)
    except UnexpectedInput as e:
        error = _convert_lark_error(e, source)
        logger.debug(f"Template parse failed: {error.message} at {error.position}")
        raise error from None

    _check_nesting(tree, source, MAX_NESTING_DEPTH if max_depth is None else max_depth)

    transformer = TemplateTransformer(source, whole_input=(start == "symbol"))
    try:
        return transformer.transform(tree)
    except RecursionError:
        raise _too_deep(source) from None
    except VisitError as e:
        if isinstance(e.orig_exc, RecursionError):
            raise _too_deep(source) from None
        # Unwrap VisitError to preserve original exception type
        if e.orig_exc:
            raise e.orig_exc from None
        raise


def parse_template(source: str, max_depth: int = None) -> Template:
    """Parse template source into a Template, bypassing the cache.

    Args:
        source: Raw template text
        max_depth: Maximum block nesting; defaults to OCTOSTACHE_MAX_NESTING_DEPTH

    Raises:
        TemplateParseError: If the source is not a valid template
    """
    return _run(source, "start", max_depth)


def parse_symbol_path(path: str) -> SymbolExpression:
    """Parse a bare symbol path like ``Octopus.Action[Name].Foo``.

    Only the symbol rule is applied and the entire input must be consumed.

    Raises:
        TemplateParseError: If ``path`` is not exactly one symbol path
    """
    return _run(path, "symbol")
