import typing

from learning_progress.models.progress_models import ModuleProgressModel, ProgressSnapshot
from learning_progress.utils.base_types import LessonId, ModuleId
from learning_progress.utils.legacy_adapter import is_lesson_completed, progress_value


def select_module_progress(
    module_id: typing.Optional[ModuleId],
    snapshot: typing.Optional[ProgressSnapshot],
    total_lessons: typing.Optional[int] = None,
) -> ModuleProgressModel:
    """
    Completion of one module from the snapshot's flat lesson list.

    Lessons belong to the module when they carry its id or their lesson id contains it
    (which also covers ids prefixed with the module).
    `total_lessons` overrides the matched count when the curriculum's lesson count is known.
    """
    if not module_id or snapshot is None or not snapshot.lessons:
        return ModuleProgressModel(moduleId=module_id, totalLessons=max(total_lessons or 0, 0))

    module_lessons = [
        lesson
        for lesson in snapshot.lessons
        if lesson.moduleId == module_id or module_id in lesson.lessonId
    ]
    completed_lessons = sum(1 for lesson in module_lessons if is_lesson_completed(lesson))
    total = total_lessons if total_lessons is not None and total_lessons > 0 else len(module_lessons)
    completed_lessons = min(completed_lessons, total)
    percent = completed_lessons / total if total > 0 else 0.0

    return ModuleProgressModel(
        moduleId=module_id,
        completedLessons=completed_lessons,
        totalLessons=total,
        progress=percent,
        isCompleted=total > 0 and completed_lessons == total,
    )


def select_lesson_progress(
    lesson_id: typing.Optional[LessonId], snapshot: typing.Optional[ProgressSnapshot]
) -> float:
    if not lesson_id or snapshot is None:
        return 0.0
    for lesson in snapshot.lessons:
        if lesson.lessonId == lesson_id:
            return progress_value(lesson)
    # Snapshot ids may carry a module prefix ("module-01/intro" for "intro").
    for lesson in snapshot.lessons:
        if lesson.lessonId.endswith(f"/{lesson_id}") or lesson.lessonId.endswith(f"-{lesson_id}"):
            return progress_value(lesson)
    return 0.0


def select_global_percent(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    if snapshot is None or snapshot.overview.totalLessons <= 0:
        return 0
    ratio = snapshot.overview.completedLessons / snapshot.overview.totalLessons
    return round(min(ratio, 1.0) * 100)


def select_completed_lessons_count(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    return snapshot.overview.completedLessons if snapshot is not None else 0


def select_modules_completed_count(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    return snapshot.overview.modulesCompleted if snapshot is not None else 0


def select_xp_total(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    return snapshot.overview.xpTotal if snapshot is not None else 0


def select_streak_days(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    return snapshot.overview.streakDays if snapshot is not None else 0


def select_level(snapshot: typing.Optional[ProgressSnapshot]) -> int:
    return snapshot.overview.level if snapshot is not None else 1
