"""Octostache -- parser for #{...} text templates."""

import logging

# Version - reads from package metadata (set in pyproject.toml)
try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("octostache")
except PackageNotFoundError:
    __version__ = "0.0.0+dev"

logger = logging.getLogger(__name__)

# Re-export from analysis module
from .analysis import (TemplateAnalysis, analyze_template, referenced_filters,
                       referenced_symbols)
# Re-export from cache module
from .cache import (CacheSettings, CacheStats, TemplateCache, clear_cache,
                    get_default_cache, parse, try_parse)
# Re-export from errors module
from .errors import TemplateParseError
# Re-export from expressions module
from .expressions import (ContentExpression, FunctionCallExpression,
                          Identifier, Indexer, Position, SymbolExpression,
                          SymbolExpressionStep, try_parse_symbol_path)
from .parsing import parse_symbol_path, parse_template
# Re-export from tokens module
from .tokens import (ConditionalToken, RepetitionToken, SubstitutionToken,
                     Template, TemplateToken, TextToken)

__all__ = [
    "CacheSettings",
    "CacheStats",
    "ConditionalToken",
    "ContentExpression",
    "FunctionCallExpression",
    "Identifier",
    "Indexer",
    "Position",
    "RepetitionToken",
    "SubstitutionToken",
    "SymbolExpression",
    "SymbolExpressionStep",
    "Template",
    "TemplateAnalysis",
    "TemplateCache",
    "TemplateParseError",
    "TemplateToken",
    "TextToken",
    "analyze_template",
    "clear_cache",
    "get_default_cache",
    "parse",
    "parse_symbol_path",
    "parse_template",
    "referenced_filters",
    "referenced_symbols",
    "try_parse",
    "try_parse_symbol_path",
]
