from unittest.mock import Mock

import pytest

from learning_progress.cache.progress_cache import CacheRevalidationError, ProgressCache


def create_cache(fetcher=None) -> ProgressCache:
    return ProgressCache(fetcher or Mock(side_effect=lambda key: {"key": key}))


def test_get_fetches_on_miss_then_serves_cached():
    fetcher = Mock(side_effect=lambda key: {"key": key})
    cache = create_cache(fetcher)

    assert cache.get("/progress/overview") == {"key": "/progress/overview"}
    assert cache.get("/progress/overview") == {"key": "/progress/overview"}
    fetcher.assert_called_once_with("/progress/overview")


def test_peek_does_not_fetch():
    fetcher = Mock()
    cache = create_cache(fetcher)

    assert cache.peek("/progress/overview") is None
    fetcher.assert_not_called()


def test_set_notifies_subscribers():
    cache = create_cache()
    subscriber = Mock()
    cache.subscribe("/progress/overview", subscriber)

    cache.set("/progress/overview", {"xpTotal": 10})

    subscriber.assert_called_once_with("/progress/overview", {"xpTotal": 10})
    assert cache.peek("/progress/overview") == {"xpTotal": 10}


def test_invalidate_unsubscribed_key_drops_entry():
    fetcher = Mock(return_value="fresh")
    cache = create_cache(fetcher)
    cache.set("/progress/overview", "stale")

    assert cache.invalidate("/progress/overview") == ["/progress/overview"]

    assert cache.peek("/progress/overview") is None
    fetcher.assert_not_called()
    assert cache.get("/progress/overview") == "fresh"


def test_invalidate_subscribed_key_refetches_and_notifies():
    fetcher = Mock(return_value="fresh")
    cache = create_cache(fetcher)
    subscriber = Mock()
    cache.set("/progress/overview", "stale")
    cache.subscribe("/progress/overview", subscriber)

    cache.invalidate("/progress/overview")

    assert cache.peek("/progress/overview") == "fresh"
    subscriber.assert_called_once_with("/progress/overview", "fresh")


def test_invalidate_unknown_key_is_noop():
    cache = create_cache()
    assert cache.invalidate("/progress/lessons/missing") == []


def test_invalidate_with_matcher():
    cache = create_cache()
    cache.set("/progress/overview", 1)
    cache.set("/progress/modules/m1", 2)
    cache.set("/lessons/m1", 3)

    invalidated = cache.invalidate(lambda key: key.startswith("/progress"))

    assert invalidated == ["/progress/modules/m1", "/progress/overview"]
    assert cache.keys() == ["/lessons/m1"]


def test_failed_revalidation_tries_every_key_then_raises():
    def fetcher(key):
        if key == "/progress/overview":
            raise RuntimeError("backend down")
        return "fresh"

    cache = create_cache(fetcher)
    for key in ("/progress/overview", "/progress/modules/m1"):
        cache.set(key, "stale")
        cache.subscribe(key, Mock())

    with pytest.raises(CacheRevalidationError) as exc_info:
        cache.invalidate(lambda key: True)

    assert list(exc_info.value.failed_keys) == ["/progress/overview"]
    assert cache.peek("/progress/modules/m1") == "fresh"
    assert cache.peek("/progress/overview") is None


def test_unsubscribe():
    cache = create_cache()
    subscriber = Mock()
    unsubscribe = cache.subscribe("/progress/overview", subscriber)

    unsubscribe()
    unsubscribe()
    cache.set("/progress/overview", 1)

    subscriber.assert_not_called()
    assert cache.keys() == ["/progress/overview"]


def test_failing_subscriber_does_not_block_others():
    cache = create_cache()
    good = Mock()
    cache.subscribe("/progress/overview", Mock(side_effect=RuntimeError("bad subscriber")))
    cache.subscribe("/progress/overview", good)

    cache.set("/progress/overview", 1)

    good.assert_called_once_with("/progress/overview", 1)
