"""Process-local, SWR-style keyed cache for progress reads."""

import logging
import typing
from dataclasses import dataclass
from datetime import datetime, timezone

from learning_progress.utils.base_types import CacheKey

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

Fetcher = typing.Callable[[CacheKey], typing.Any]
KeyMatcher = typing.Callable[[CacheKey], bool]
CacheSubscriber = typing.Callable[[CacheKey, typing.Any], None]


class CacheRevalidationError(Exception):
    def __init__(self, failed_keys: dict[CacheKey, Exception]) -> None:
        self.failed_keys = failed_keys
        super().__init__(f"Failed to revalidate {len(failed_keys)} cache key(s): {sorted(failed_keys)}")


@dataclass
class _CacheEntry:
    data: typing.Any
    fetched_at: datetime


class ProgressCache:
    """
    Keys are request paths ("/progress/overview"). Reads fetch on miss.

    Invalidating a key drops its entry; keys with subscribers are refetched right away
    and the subscribers are notified, keys without subscribers refetch on next read.
    """

    def __init__(self, fetcher: Fetcher) -> None:
        self._fetcher = fetcher
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._subscribers: dict[CacheKey, list[CacheSubscriber]] = {}

    def get(self, key: CacheKey) -> typing.Any:
        entry = self._entries.get(key)
        if entry is not None:
            return entry.data
        return self._revalidate(key)

    def peek(self, key: CacheKey) -> typing.Optional[typing.Any]:
        entry = self._entries.get(key)
        return entry.data if entry is not None else None

    def set(self, key: CacheKey, data: typing.Any) -> None:
        self._entries[key] = _CacheEntry(data=data, fetched_at=datetime.now(timezone.utc))
        self._notify(key, data)

    def keys(self) -> list[CacheKey]:
        return sorted(set(self._entries) | set(self._subscribers))

    def subscribe(self, key: CacheKey, fn: CacheSubscriber) -> typing.Callable[[], None]:
        self._subscribers.setdefault(key, []).append(fn)

        def unsubscribe() -> None:
            subscribers = self._subscribers.get(key, [])
            if fn in subscribers:
                subscribers.remove(fn)
            if not subscribers:
                self._subscribers.pop(key, None)

        return unsubscribe

    def invalidate(self, key_or_matcher: typing.Union[CacheKey, KeyMatcher]) -> list[CacheKey]:
        """
        :returns: The keys that were invalidated
        :raises CacheRevalidationError: After every matched key was attempted, if any refetch failed
        """
        matched = self._match(key_or_matcher)
        failures: dict[CacheKey, Exception] = {}

        for key in matched:
            self._entries.pop(key, None)
            if not self._subscribers.get(key):
                continue
            try:
                self._revalidate(key)
            except Exception as e:
                _LOGGER.error(f"Revalidation failed for cache key {key}: {e}")
                failures[key] = e

        if failures:
            raise CacheRevalidationError(failures)
        return matched

    def clear(self) -> None:
        self._entries.clear()

    def _match(self, key_or_matcher: typing.Union[CacheKey, KeyMatcher]) -> list[CacheKey]:
        if callable(key_or_matcher):
            return [key for key in self.keys() if key_or_matcher(key)]
        return [key_or_matcher] if key_or_matcher in self.keys() else []

    def _revalidate(self, key: CacheKey) -> typing.Any:
        data = self._fetcher(key)
        self.set(key, data)
        return data

    def _notify(self, key: CacheKey, data: typing.Any) -> None:
        for subscriber in list(self._subscribers.get(key, [])):
            try:
                subscriber(key, data)
            except Exception as e:
                _LOGGER.error(f"Cache subscriber for {key} raised: {e}", exc_info=True)
