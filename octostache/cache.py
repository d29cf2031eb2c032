"""
Process-wide cache of parsed templates.

Parsing the same template string repeatedly is wasteful in long-running
hosts, so parsed Templates are memoized keyed by the exact source string.
Entries use a sliding expiration (reset on every access) and the cache as a
whole is bounded by entry count and total source size, evicting the least
recently used entries first. Failed parses are never cached.

Cache can be controlled via environment variables:
- OCTOSTACHE_CACHE: set to "0", "false", or empty string to disable
- OCTOSTACHE_CACHE_EXPIRATION: sliding expiration in seconds (default 600)
- OCTOSTACHE_CACHE_MAX_ENTRIES: maximum number of templates (default 10000)
- OCTOSTACHE_CACHE_MAX_SIZE: maximum total characters of cached source (default 20Mi)
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from decouple import config as env_config
from pydantic import BaseModel, Field

from .errors import TemplateParseError
from .parsing import parse_template
from .tokens import Template

logger = logging.getLogger(__name__)

DEFAULT_SLIDING_EXPIRATION = 10 * 60
DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_MAX_SIZE = 20 * 1024 * 1024


def cache_enabled() -> bool:
    """Whether the default cache is enabled (OCTOSTACHE_CACHE)."""
    setting = env_config("OCTOSTACHE_CACHE", default="true")
    return setting.lower() not in ("0", "false", "")


class CacheSettings(BaseModel):
    enabled: bool = Field(default_factory=cache_enabled)
    sliding_expiration: float = Field(
        default_factory=lambda: env_config(
            "OCTOSTACHE_CACHE_EXPIRATION", default=DEFAULT_SLIDING_EXPIRATION, cast=float
        ),
        gt=0,
    )
    max_entries: int = Field(
        default_factory=lambda: env_config(
            "OCTOSTACHE_CACHE_MAX_ENTRIES", default=DEFAULT_MAX_ENTRIES, cast=int
        ),
        gt=0,
    )
    max_size: int = Field(
        default_factory=lambda: env_config(
            "OCTOSTACHE_CACHE_MAX_SIZE", default=DEFAULT_MAX_SIZE, cast=int
        ),
        gt=0,
    )


class CacheStats(BaseModel):
    entries: int = 0
    size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0


class _CacheEntry:
    __slots__ = ("template", "size", "last_access")

    def __init__(self, template: Template, size: int, last_access: float):
        self.template = template
        self.size = size
        self.last_access = last_access


class TemplateCache:
    """Thread-safe memo of source string -> Template.

    Entries are kept in least-recently-used order, so expired entries always
    form a prefix of the ordering. Parsing happens outside the lock; when two
    threads miss on the same source concurrently, both parse but the first
    result stored is the one every caller gets back.
    """

    def __init__(
        self,
        sliding_expiration: float = DEFAULT_SLIDING_EXPIRATION,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
        parser: Callable[[str], Template] = parse_template,
    ):
        self.sliding_expiration = sliding_expiration
        self.max_entries = max_entries
        self.max_size = max_size
        self._clock = clock
        self._parse = parser
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()
        self._stats = CacheStats()

    @classmethod
    def from_settings(cls, settings: Optional[CacheSettings] = None) -> "TemplateCache":
        settings = settings or CacheSettings()
        return cls(
            sliding_expiration=settings.sliding_expiration,
            max_entries=settings.max_entries,
            max_size=settings.max_size,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, source: str) -> bool:
        with self._lock:
            entry = self._entries.get(source)
            return entry is not None and not self._expired(entry, self._clock())

    def _expired(self, entry: _CacheEntry, now: float) -> bool:
        return now - entry.last_access >= self.sliding_expiration

    def _remove(self, source: str) -> None:
        entry = self._entries.pop(source)
        self._size -= entry.size

    def _sweep(self, now: float) -> None:
        """Drop expired entries, then evict LRU entries until within bounds."""
        while self._entries:
            source, entry = next(iter(self._entries.items()))
            if not self._expired(entry, now):
                break
            self._remove(source)
            self._stats.expirations += 1

        while self._entries and (
            len(self._entries) > self.max_entries or self._size > self.max_size
        ):
            source = next(iter(self._entries))
            self._remove(source)
            self._stats.evictions += 1
            logger.debug(f"Evicted template ({len(source)} chars) from cache")

    def get(self, source: str) -> Optional[Template]:
        """Return the cached Template for ``source`` and reset its expiry, or None."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(source)
            if entry is not None and self._expired(entry, now):
                self._remove(source)
                self._stats.expirations += 1
                entry = None
            if entry is None:
                self._stats.misses += 1
                return None
            entry.last_access = now
            self._entries.move_to_end(source)
            self._stats.hits += 1
            return entry.template

    def _store(self, source: str, template: Template) -> Template:
        with self._lock:
            now = self._clock()
            existing = self._entries.get(source)
            if existing is not None and not self._expired(existing, now):
                # lost a race with another thread parsing the same source
                existing.last_access = now
                self._entries.move_to_end(source)
                return existing.template
            if existing is not None:
                self._remove(source)
            self._entries[source] = _CacheEntry(template, len(source), now)
            self._size += len(source)
            self._sweep(now)
            return template

    def get_or_parse(self, source: str) -> Template:
        """Return the cached Template for ``source``, parsing and storing it on a miss.

        Raises:
            TemplateParseError: If ``source`` is not a valid template (not cached)
        """
        template = self.get(source)
        if template is not None:
            logger.debug(f"Template cache hit ({len(source)} chars)")
            return template

        logger.debug(f"Template cache miss ({len(source)} chars), parsing")
        template = self._parse(source)
        return self._store(source, template)

    def try_get_or_parse(
        self, source: str
    ) -> Tuple[bool, Optional[Template], Optional[str]]:
        """Like get_or_parse but reports failure instead of raising.

        Returns:
            Tuple of (success, template, error). On failure template is None and
            error is a human-readable description.
        """
        try:
            return True, self.get_or_parse(source), None
        except TemplateParseError as e:
            return False, None, str(e)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return self._stats.model_copy(
                update={"entries": len(self._entries), "size": self._size}
            )


# lazy-initialised default cache instance
_default_cache = None
_default_cache_lock = threading.Lock()


def get_default_cache() -> Optional[TemplateCache]:
    """Get or create the process-wide cache; None when caching is disabled."""
    global _default_cache

    if _default_cache is not None:
        return _default_cache

    settings = CacheSettings()
    if not settings.enabled:
        return None

    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = TemplateCache.from_settings(settings)
            logger.debug(
                f"Template cache initialised (expiration={settings.sliding_expiration}s, "
                f"max_entries={settings.max_entries}, max_size={settings.max_size})"
            )
    return _default_cache


def parse(source: str) -> Template:
    """Parse template source, consulting the process-wide cache.

    Raises:
        TemplateParseError: If ``source`` is not a valid template
    """
    cache = get_default_cache()
    if cache is None:
        return parse_template(source)
    return cache.get_or_parse(source)


def try_parse(source: str) -> Tuple[bool, Optional[Template], Optional[str]]:
    """Parse template source without raising on malformed input.

    Returns:
        Tuple of (success, template, error)
    """
    cache = get_default_cache()
    if cache is None:
        try:
            return True, parse_template(source), None
        except TemplateParseError as e:
            return False, None, str(e)
    return cache.try_get_or_parse(source)


def clear_cache():
    """Drop every cached template from the process-wide cache."""
    cache = get_default_cache()
    if cache is None:
        logger.info("Template caching is disabled, nothing to clear")
        return
    cache.clear()
    logger.info("Cleared template cache")
