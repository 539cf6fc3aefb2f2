import logging
import typing

from learning_progress.api.progress_api_client import (
    ProgressApiClient,
    ProgressNetworkError,
)
from learning_progress.events.progress_event_channel import ProgressEventChannel
from learning_progress.models.progress_event_models import ProgressUpdatedEvent
from learning_progress.models.progress_models import (
    LessonProgress,
    ProgressOverview,
    ProgressSnapshot,
)
from learning_progress.services.progress_mutation_service import ProgressMutationService
from learning_progress.utils.base_types import LessonId, UserId
from learning_progress.utils.legacy_adapter import is_lesson_completed
from learning_progress.utils.progress_helpers import merge_server_record, now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

XP_PER_LESSON = 100
LESSONS_PER_LEVEL = 5


def derive_overview(
    lessons: typing.Sequence[LessonProgress],
    base: typing.Optional[ProgressOverview] = None,
) -> ProgressOverview:
    """
    Approximate overview for a snapshot built without the backend.

    Counts come from the lessons themselves; streak and calendar carry over from
    `base` when one is known.
    """
    completed_lessons = sum(1 for lesson in lessons if is_lesson_completed(lesson))
    level = completed_lessons // LESSONS_PER_LEVEL + 1
    return ProgressOverview(
        xpTotal=completed_lessons * XP_PER_LESSON,
        level=level,
        nextLevelXp=level * LESSONS_PER_LEVEL * XP_PER_LESSON,
        streakDays=base.streakDays if base else 0,
        completedLessons=completed_lessons,
        totalLessons=max(base.totalLessons if base else 0, len(lessons)),
        modulesCompleted=base.modulesCompleted if base else 0,
        totalModules=base.totalModules if base else 0,
        calendar=list(base.calendar) if base else [],
    )


def merge_pending_lessons(
    server_lessons: typing.Sequence[LessonProgress],
    pending_lessons: typing.Sequence[LessonProgress],
    reset_lesson_ids: typing.Collection[LessonId] = (),
) -> list[LessonProgress]:
    """
    Overlay unconfirmed local records on the server's.

    Progress never goes down, except for lessons in `reset_lesson_ids`: a queued
    reset the server has not seen yet, so the local record replaces the server's.
    """
    merged: dict[LessonId, LessonProgress] = {lesson.lessonId: lesson for lesson in server_lessons}
    for pending in pending_lessons:
        server_lesson = merged.get(pending.lessonId)
        if server_lesson is None or pending.lessonId in reset_lesson_ids:
            merged[pending.lessonId] = pending
        else:
            merged[pending.lessonId] = merge_server_record(pending, server_lesson)
    return list(merged.values())


class SnapshotLoader:
    """
    Loads the progress snapshot and rebuilds normalized state from it.

    Without an auth token, or when the backend is unreachable, the snapshot is built
    from local state and marked `source="local"`.
    """

    def __init__(
        self,
        api_client: ProgressApiClient,
        mutation_service: ProgressMutationService,
        user_id: typing.Optional[UserId] = None,
    ):
        self.api_client = api_client
        self.mutation_service = mutation_service
        self.user_id = user_id
        self._snapshot: typing.Optional[ProgressSnapshot] = None
        self._loading = False

    @property
    def snapshot(self) -> typing.Optional[ProgressSnapshot]:
        return self._snapshot

    @property
    def is_loading(self) -> bool:
        return self._loading

    def load(self) -> typing.Optional[ProgressSnapshot]:
        """
        Fetch and apply a fresh snapshot. A call made while a load is running
        returns the current snapshot instead of starting another fetch.
        """
        if self._loading:
            _LOGGER.debug("Snapshot load already in progress; skipping")
            return self._snapshot

        self._loading = True
        try:
            snapshot = self._fetch_snapshot()
            self.mutation_service.apply_snapshot(snapshot)
            self._snapshot = snapshot
        finally:
            self._loading = False

        _LOGGER.info(
            f"Loaded {snapshot.source} progress snapshot: "
            f"{snapshot.overview.completedLessons}/{snapshot.overview.totalLessons} lessons completed"
        )
        return snapshot

    def attach(self, event_channel: ProgressEventChannel) -> typing.Callable[[], None]:
        """Reload whenever a lesson's progress changes. Returns the unsubscribe callable."""

        def on_progress_updated(event: ProgressUpdatedEvent) -> None:
            _LOGGER.debug(f"Refreshing snapshot after update to lesson {event.lessonId}")
            self.load()

        return event_channel.subscribe(on_progress_updated)

    def _fetch_snapshot(self) -> ProgressSnapshot:
        if not self.api_client.has_auth_token():
            _LOGGER.info("No auth token available; using local progress snapshot")
            return self._local_snapshot()

        try:
            server_snapshot = self.api_client.fetch_snapshot()
        except ProgressNetworkError as e:
            _LOGGER.warning(f"Progress service unreachable, using local snapshot: {str(e)}")
            return self._local_snapshot()

        pending_lessons = self._pending_lessons()
        if not pending_lessons:
            return server_snapshot

        reset_lesson_ids = {event.lessonId for event in self.mutation_service.outbox.pending() if event.reset}
        lessons = merge_pending_lessons(server_snapshot.lessons, pending_lessons, reset_lesson_ids)
        completed_lessons = sum(1 for lesson in lessons if is_lesson_completed(lesson))
        return ProgressSnapshot(
            userId=server_snapshot.userId or self.user_id,
            overview=server_snapshot.overview.model_copy(update={"completedLessons": completed_lessons}),
            lessons=lessons,
            source="server",
            lastSyncAt=server_snapshot.lastSyncAt or now_iso(),
        )

    def _pending_lessons(self) -> list[LessonProgress]:
        pending: dict[LessonId, LessonProgress] = {}
        for event in self.mutation_service.outbox.pending():
            record = self.mutation_service.store.find_lesson(event.lessonId, event.moduleId)
            if record is not None:
                pending[event.lessonId] = record
        return list(pending.values())

    def _local_snapshot(self) -> ProgressSnapshot:
        lessons = self.mutation_service.store.all_lessons()
        base = self._snapshot.overview if self._snapshot else None
        return ProgressSnapshot(
            userId=self.user_id,
            overview=derive_overview(lessons, base),
            lessons=lessons,
            source="local",
            lastSyncAt=self._snapshot.lastSyncAt if self._snapshot else None,
        )
