import logging
import re
import typing
from datetime import datetime, timezone

from learning_progress.api.progress_api_client import ProgressRateLimitError
from learning_progress.models.progress_models import (
    LessonProgress,
    LessonProgressUpdateInput,
    ModuleState,
    ProgressByModule,
)
from learning_progress.utils.base_types import IsoTimestamp, LessonId, ModuleId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

# Lesson ids are conventionally prefixed with their module: "module-03-ventilation-modes".
MODULE_PREFIX_PATTERN = re.compile(r"^(module-\d+)(?:[-/]|$)")

MAX_RATE_LIMIT_RETRIES = 1


def now_iso() -> IsoTimestamp:
    return IsoTimestamp(datetime.now(timezone.utc).isoformat())


def create_default_lesson_progress(
    lesson_id: LessonId,
    module_id: typing.Optional[ModuleId] = None,
) -> LessonProgress:
    return LessonProgress(lessonId=lesson_id, moduleId=module_id, progress=0.0, timeSpent=0)


def infer_module_id_from_lesson(
    lesson_id: LessonId,
    progress_by_module: typing.Optional[typing.Mapping[ModuleId, ModuleState]] = None,
    default_module_id: typing.Optional[ModuleId] = None,
) -> typing.Optional[ModuleId]:
    """
    Resolve the module a lesson belongs to.

    Order: the `module-NN` prefix of the id, then a module that already holds the
    lesson in normalized state, then the caller's default. None when all fail.
    """
    match = MODULE_PREFIX_PATTERN.match(lesson_id)
    if match:
        return ModuleId(match.group(1))

    if progress_by_module:
        for module_id, module_state in progress_by_module.items():
            if lesson_id in module_state.lessonsById:
                return module_id

    if default_module_id:
        return default_module_id

    _LOGGER.debug(f"Could not infer module for lesson {lesson_id}")
    return None


def calculate_optimistic_progress(
    current: LessonProgress,
    update: LessonProgressUpdateInput,
    *,
    module_id: typing.Optional[ModuleId] = None,
    reset: bool = False,
    timestamp: typing.Optional[IsoTimestamp] = None,
) -> LessonProgress:
    """
    Apply a write on top of the current record without ever lowering progress.

    Progress becomes max(current, incoming); time spent grows by the delta. With
    `reset=True` both start over from the incoming values and resume state is cleared.
    """
    incoming = update.resolved_progress()
    updated_at = timestamp or now_iso()

    if reset:
        progress = incoming if incoming is not None else 0.0
        time_spent = update.timeSpentDelta
        scroll_position = update.scrollPosition
        last_viewed_section = update.lastViewedSection
    else:
        progress = current.progress if incoming is None else max(current.progress, incoming)
        time_spent = current.timeSpent + update.timeSpentDelta
        scroll_position = update.scrollPosition if update.scrollPosition is not None else current.scrollPosition
        last_viewed_section = update.lastViewedSection or current.lastViewedSection

    return LessonProgress.model_validate(
        {
            "lessonId": current.lessonId,
            "moduleId": module_id or current.moduleId,
            "progress": progress,
            "timeSpent": time_spent,
            "scrollPosition": scroll_position,
            "lastViewedSection": last_viewed_section,
            "lastAccessed": updated_at,
            "updatedAt": updated_at,
        }
    )


def merge_server_record(
    local: typing.Optional[LessonProgress],
    server: LessonProgress,
    module_id: typing.Optional[ModuleId] = None,
) -> LessonProgress:
    """
    Fold a server response into the local record.

    Responses can arrive after a newer optimistic write, so progress and time spent
    keep the higher of the two values. `completed` is re-derived by the model.
    """
    if local is None:
        if server.moduleId or not module_id:
            return server
        return LessonProgress.model_validate({**server.model_dump(), "moduleId": module_id})

    return LessonProgress.model_validate(
        {
            "lessonId": local.lessonId,
            "moduleId": server.moduleId or local.moduleId or module_id,
            "progress": max(local.progress, server.progress),
            "timeSpent": max(local.timeSpent, server.timeSpent),
            "scrollPosition": server.scrollPosition if server.scrollPosition is not None else local.scrollPosition,
            "lastViewedSection": server.lastViewedSection or local.lastViewedSection,
            "lastAccessed": server.lastAccessed or local.lastAccessed,
            "updatedAt": server.updatedAt or local.updatedAt,
        }
    )


def initialize_missing_progress(
    current: typing.Optional[LessonProgress],
    lesson_id: LessonId,
    module_id: typing.Optional[ModuleId] = None,
) -> LessonProgress:
    """A 404 means "no progress yet": fall back to the zero record unless we already hold one."""
    if current is not None:
        return current
    return create_default_lesson_progress(lesson_id, module_id)


def get_retry_after_seconds(error: ProgressRateLimitError, default_seconds: float) -> float:
    if error.retry_after is not None and error.retry_after > 0:
        return float(error.retry_after)
    return default_seconds


def should_retry_rate_limited(attempt: int) -> bool:
    return attempt < MAX_RATE_LIMIT_RETRIES


def group_lessons_by_module(
    lessons: typing.Iterable[LessonProgress],
    default_module_id: typing.Optional[ModuleId] = None,
) -> tuple[ProgressByModule, dict[LessonId, LessonProgress]]:
    """
    Split flat lesson records into normalized per-module state.

    Records whose module cannot be resolved are returned separately so they stay
    out of module aggregation.
    """
    progress_by_module: ProgressByModule = {}
    unassigned: dict[LessonId, LessonProgress] = {}

    for lesson in lessons:
        module_id = lesson.moduleId or infer_module_id_from_lesson(lesson.lessonId, None, default_module_id)
        if module_id is None:
            unassigned[lesson.lessonId] = lesson
            continue

        if lesson.moduleId != module_id:
            lesson = LessonProgress.model_validate({**lesson.model_dump(), "moduleId": module_id})

        module_state = progress_by_module.setdefault(module_id, ModuleState())
        module_state.lessonsById[lesson.lessonId] = lesson

    return progress_by_module, unassigned
