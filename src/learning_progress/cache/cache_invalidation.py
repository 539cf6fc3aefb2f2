import logging
import typing

from learning_progress.cache.progress_cache import KeyMatcher, ProgressCache
from learning_progress.utils.base_types import CacheKey, LessonId, ModuleId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

PROGRESS_KEY_PREFIX = "/progress"
OVERVIEW_KEY = CacheKey("/progress/overview")


def module_progress_key(module_id: ModuleId) -> CacheKey:
    return CacheKey(f"/progress/modules/{module_id}")


def module_resume_key(module_id: ModuleId) -> CacheKey:
    return CacheKey(f"/progress/modules/{module_id}/resume")


def module_lessons_progress_key(module_id: ModuleId) -> CacheKey:
    return CacheKey(f"/progress/modules/{module_id}/lessons")


def lesson_progress_key(lesson_id: LessonId) -> CacheKey:
    return CacheKey(f"/progress/lessons/{lesson_id}")


def is_progress_key(key: CacheKey) -> bool:
    return isinstance(key, str) and key.startswith(PROGRESS_KEY_PREFIX)


class ProgressCacheInvalidator:
    """
    Invalidates every cache key a lesson write can make stale.

    Targeted keys go first, then every "/progress"-prefixed key as a catch-all, so a
    key can be revalidated twice in one call.
    """

    def __init__(self, cache: ProgressCache) -> None:
        self.cache = cache

    def _keys_for(
        self, module_id: typing.Optional[ModuleId], lesson_id: typing.Optional[LessonId]
    ) -> list[typing.Union[CacheKey, KeyMatcher]]:
        targets: list[typing.Union[CacheKey, KeyMatcher]] = [OVERVIEW_KEY]
        if module_id:
            targets.extend(
                [
                    module_progress_key(module_id),
                    module_resume_key(module_id),
                    module_lessons_progress_key(module_id),
                ]
            )
        if lesson_id:
            targets.append(lesson_progress_key(lesson_id))
        targets.append(is_progress_key)
        return targets

    def invalidate_progress_cache(
        self,
        module_id: typing.Optional[ModuleId] = None,
        lesson_id: typing.Optional[LessonId] = None,
    ) -> None:
        failed = 0
        for target in self._keys_for(module_id, lesson_id):
            try:
                self.cache.invalidate(target)
            except Exception as e:
                failed += 1
                label = target if isinstance(target, str) else f"matcher {getattr(target, '__name__', target)}"
                _LOGGER.error(f"Cache invalidation failed for {label}: {e}")

        if failed:
            _LOGGER.warning(
                f"Progress cache invalidation finished with {failed} failure(s) "
                f"(module={module_id}, lesson={lesson_id})"
            )
        else:
            _LOGGER.debug(f"Progress cache invalidated (module={module_id}, lesson={lesson_id})")
