from unittest.mock import Mock, call

from learning_progress.cache.cache_invalidation import (
    OVERVIEW_KEY,
    ProgressCacheInvalidator,
    is_progress_key,
    lesson_progress_key,
    module_lessons_progress_key,
    module_progress_key,
    module_resume_key,
)
from learning_progress.cache.progress_cache import CacheRevalidationError, ProgressCache


def test_key_builders():
    assert OVERVIEW_KEY == "/progress/overview"
    assert module_progress_key("m1") == "/progress/modules/m1"
    assert module_resume_key("m1") == "/progress/modules/m1/resume"
    assert module_lessons_progress_key("m1") == "/progress/modules/m1/lessons"
    assert lesson_progress_key("l1") == "/progress/lessons/l1"


def test_is_progress_key():
    assert is_progress_key("/progress/overview") is True
    assert is_progress_key("/lessons/l1") is False


def test_invalidation_order_with_module_and_lesson():
    cache = Mock()
    ProgressCacheInvalidator(cache).invalidate_progress_cache("m1", "l1")

    assert cache.invalidate.call_args_list == [
        call("/progress/overview"),
        call("/progress/modules/m1"),
        call("/progress/modules/m1/resume"),
        call("/progress/modules/m1/lessons"),
        call("/progress/lessons/l1"),
        call(is_progress_key),
    ]


def test_invalidation_without_ids():
    cache = Mock()
    ProgressCacheInvalidator(cache).invalidate_progress_cache()

    assert cache.invalidate.call_args_list == [call("/progress/overview"), call(is_progress_key)]


def test_failures_are_logged_and_remaining_keys_continue():
    cache = Mock()
    cache.invalidate.side_effect = [
        CacheRevalidationError({"/progress/overview": RuntimeError("down")}),
        None,
        None,
        None,
        None,
        None,
    ]

    ProgressCacheInvalidator(cache).invalidate_progress_cache("m1", "l1")

    assert cache.invalidate.call_count == 6


def test_invalidation_is_idempotent():
    fetcher = Mock(side_effect=lambda key: f"fresh:{key}")
    cache = ProgressCache(fetcher)
    cache.set("/progress/overview", "stale")
    cache.set("/progress/modules/m1", "stale")
    cache.set("/progress/lessons/l1", "stale")
    cache.set("/curriculum", "untouched")
    cache.subscribe("/progress/overview", Mock())
    invalidator = ProgressCacheInvalidator(cache)

    invalidator.invalidate_progress_cache("m1", "l1")
    state_after_first = {key: cache.peek(key) for key in cache.keys()}
    invalidator.invalidate_progress_cache("m1", "l1")
    state_after_second = {key: cache.peek(key) for key in cache.keys()}

    assert state_after_first == state_after_second
    assert state_after_second == {"/curriculum": "untouched", "/progress/overview": "fresh:/progress/overview"}
