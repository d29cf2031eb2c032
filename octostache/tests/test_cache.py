"""
Tests for the template cache.
"""

import os
import sys
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from unittest.mock import MagicMock, patch

import pytest

import octostache.cache as cache_module
from octostache import Template, TemplateParseError, parse, try_parse
from octostache.cache import (CacheSettings, TemplateCache, clear_cache,
                              get_default_cache)
from octostache.parsing import parse_template


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counting_parser():
    return MagicMock(side_effect=parse_template)


@pytest.fixture
def fresh_default_cache(monkeypatch):
    """Reset the lazily created process-wide cache around a test."""
    monkeypatch.setattr(cache_module, "_default_cache", None)
    with patch.dict(os.environ, {"OCTOSTACHE_CACHE": "true"}):
        yield
    monkeypatch.setattr(cache_module, "_default_cache", None)


class TestSlidingExpiration:

    def test_same_source_returns_same_instance(self, clock):
        cache = TemplateCache(clock=clock)
        first = cache.get_or_parse("Hello #{Name}")
        clock.advance(60)
        assert cache.get_or_parse("Hello #{Name}") is first

    def test_access_resets_the_window(self, clock, counting_parser):
        cache = TemplateCache(sliding_expiration=600, clock=clock, parser=counting_parser)
        first = cache.get_or_parse("#{a}")
        for _ in range(5):
            clock.advance(599)
            assert cache.get_or_parse("#{a}") is first
        assert counting_parser.call_count == 1

    def test_idle_entry_expires(self, clock, counting_parser):
        cache = TemplateCache(sliding_expiration=600, clock=clock, parser=counting_parser)
        first = cache.get_or_parse("#{a}")
        clock.advance(600)
        assert "#{a}" not in cache
        second = cache.get_or_parse("#{a}")
        assert second is not first
        assert second == first
        assert counting_parser.call_count == 2
        assert cache.stats().expirations == 1

    def test_expired_entries_are_swept_on_insert(self, clock):
        cache = TemplateCache(sliding_expiration=10, clock=clock)
        cache.get_or_parse("a")
        cache.get_or_parse("b")
        clock.advance(11)
        cache.get_or_parse("c")
        assert len(cache) == 1


class TestEviction:

    def test_least_recently_used_entry_is_evicted(self, clock):
        cache = TemplateCache(max_entries=2, clock=clock)
        cache.get_or_parse("a")
        cache.get_or_parse("b")
        cache.get_or_parse("a")
        cache.get_or_parse("c")
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.stats().evictions == 1

    def test_total_size_ceiling(self, clock):
        cache = TemplateCache(max_size=10, clock=clock)
        cache.get_or_parse("aaaaaa")
        cache.get_or_parse("bbbbbb")
        assert len(cache) == 1
        assert "bbbbbb" in cache
        assert cache.stats().size == 6

    def test_clear(self, clock):
        cache = TemplateCache(clock=clock)
        cache.get_or_parse("a")
        cache.clear()
        assert len(cache) == 0
        assert cache.stats().size == 0


class TestFailures:

    def test_failures_are_not_cached(self, counting_parser):
        cache = TemplateCache(parser=counting_parser)
        for _ in range(2):
            with pytest.raises(TemplateParseError):
                cache.get_or_parse("#{if X}A")
        assert counting_parser.call_count == 2
        assert len(cache) == 0

    def test_failure_reporting_is_idempotent(self):
        cache = TemplateCache()
        first = cache.try_get_or_parse("#{if X}A")
        second = cache.try_get_or_parse("#{if X}A")
        assert first == second

    def test_try_form_reports_instead_of_raising(self):
        success, template, error = TemplateCache().try_get_or_parse("#{if X}A")
        assert success is False
        assert template is None
        assert error
        assert "#{/if}" in error

    def test_try_form_success(self):
        success, template, error = TemplateCache().try_get_or_parse("#{if X}A#{/if}")
        assert success is True
        assert isinstance(template, Template)
        assert error is None

    def test_empty_template_is_cached(self, counting_parser):
        cache = TemplateCache(parser=counting_parser)
        assert cache.get_or_parse("") is cache.get_or_parse("")
        assert counting_parser.call_count == 1

    def test_nesting_beyond_recursion_limit_is_reported(self):
        depth = sys.getrecursionlimit() * 2
        cache = TemplateCache(parser=partial(parse_template, max_depth=depth))
        success, template, error = cache.try_get_or_parse(
            "#{if A}" * depth + "#{/if}" * depth
        )
        assert (success, template) == (False, None)
        assert "nested too deeply" in error


class TestConcurrency:

    def test_concurrent_misses_share_one_result(self):
        cache = TemplateCache()
        source = "#{each s in Servers}#{s.Name | ToUpper}#{/each}"
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(cache.get_or_parse, [source] * 64))
        assert all(r is results[0] for r in results)
        assert len(cache) == 1

    def test_concurrent_distinct_keys(self):
        cache = TemplateCache()
        sources = [f"#{{Var{i}}}" for i in range(100)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(cache.get_or_parse, sources * 3))
        assert len(cache) == 100


class TestSettings:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = CacheSettings()
        assert settings.enabled is True
        assert settings.sliding_expiration == 600
        assert settings.max_entries == 10_000
        assert settings.max_size == 20 * 1024 * 1024

    def test_from_environment(self):
        env = {
            "OCTOSTACHE_CACHE_EXPIRATION": "30",
            "OCTOSTACHE_CACHE_MAX_ENTRIES": "5",
            "OCTOSTACHE_CACHE_MAX_SIZE": "1000",
        }
        with patch.dict(os.environ, env):
            cache = TemplateCache.from_settings()
        assert cache.sliding_expiration == 30
        assert cache.max_entries == 5
        assert cache.max_size == 1000

    @pytest.mark.parametrize("value", ["0", "false", "False", ""])
    def test_cache_disabled(self, value):
        with patch.dict(os.environ, {"OCTOSTACHE_CACHE": value}):
            assert CacheSettings().enabled is False


class TestModuleLevelParse:

    def test_parse_returns_cached_instance(self, fresh_default_cache):
        assert parse("Hi #{Name}") is parse("Hi #{Name}")

    def test_parse_raises_on_malformed_input(self, fresh_default_cache):
        with pytest.raises(TemplateParseError):
            parse("#{if X}A#{/unless}")

    def test_try_parse_never_raises(self, fresh_default_cache):
        success, template, error = try_parse("#{if X}A")
        assert (success, template) == (False, None)
        assert error

    def test_try_parse_and_parse_share_the_cache(self, fresh_default_cache):
        success, template, _ = try_parse("#{Shared}")
        assert success
        assert parse("#{Shared}") is template

    def test_clear_cache(self, fresh_default_cache):
        first = parse("#{x}")
        clear_cache()
        assert parse("#{x}") is not first

    def test_disabled_cache_parses_every_time(self, monkeypatch):
        monkeypatch.setattr(cache_module, "_default_cache", None)
        with patch.dict(os.environ, {"OCTOSTACHE_CACHE": "0"}):
            assert get_default_cache() is None
            first = parse("#{x}")
            assert parse("#{x}") is not first
            assert parse("#{x}") == first
            assert try_parse("#{x")[0] is False
