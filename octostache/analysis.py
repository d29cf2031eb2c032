"""Template analysis: which variables and filters a template refers to.

Lets a host check that it can supply every variable a template needs before
handing it to the evaluator.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import FrozenSet, List, Tuple

from .expressions import ContentExpression, FunctionCallExpression, SymbolExpression
from .tokens import ConditionalToken, RepetitionToken, SubstitutionToken


@dataclass
class TemplateAnalysis:
    """Result of walking a template's token tree."""
    symbols: List[SymbolExpression] = field(default_factory=list)
    filters: List[str] = field(default_factory=list)

    @property
    def root_names(self) -> FrozenSet[str]:
        """Top-level variable names, e.g. ``Octopus`` for ``Octopus.Action[Name]``."""
        return frozenset(s.root.text for s in self.symbols)


def _unwrap(expression: ContentExpression) -> Tuple[SymbolExpression, List[str]]:
    """Split a filter chain into its subject and filter names (applied order)."""
    filters = []
    while isinstance(expression, FunctionCallExpression):
        filters.append(expression.function.text)
        expression = expression.argument
    filters.reverse()
    return expression, filters


def analyze_template(template) -> TemplateAnalysis:
    """Collect referenced symbols and filters, in source order.

    Symbols rooted at a loop variable of an enclosing ``#{each}`` are bound
    by the template itself and are not reported.

    Args:
        template: A parsed Template (or any sequence of tokens)

    Returns:
        TemplateAnalysis with de-duplicated symbols and filter names
    """
    analysis = TemplateAnalysis()
    seen_symbols = set()
    seen_filters = set()

    def add_symbol(symbol: SymbolExpression, bound: FrozenSet[str]):
        if symbol.root.text.strip() in bound or symbol in seen_symbols:
            return
        seen_symbols.add(symbol)
        analysis.symbols.append(symbol)

    # explicit stack of (remaining tokens, loop variables in scope)
    stack = [(deque(template), frozenset())]
    while stack:
        tokens, bound = stack[-1]
        if not tokens:
            stack.pop()
            continue
        token = tokens.popleft()

        if isinstance(token, SubstitutionToken):
            subject, filters = _unwrap(token.expression)
            add_symbol(subject, bound)
            for name in filters:
                if name not in seen_filters:
                    seen_filters.add(name)
                    analysis.filters.append(name)
        elif isinstance(token, ConditionalToken):
            add_symbol(token.token, bound)
            stack.append((deque(token.truthy or token.falsy), bound))
        elif isinstance(token, RepetitionToken):
            add_symbol(token.collection, bound)
            stack.append((deque(token.template), bound | {token.enumerator.text}))

    return analysis


def referenced_symbols(template) -> List[SymbolExpression]:
    """Symbol paths the template reads from its binding context."""
    return analyze_template(template).symbols


def referenced_filters(template) -> List[str]:
    """Filter names the template applies, in order of first use."""
    return analyze_template(template).filters
