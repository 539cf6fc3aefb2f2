"""
Compatibility shapes for views that still read the old progress map.

Completion here, and everywhere else in the package, follows one rule: a lesson is
completed when its clamped progress value equals 1. Boolean `completed` /
`isCompleted` flags found on records are ignored.
"""

import logging
import re
import typing

from learning_progress.models.progress_models import (
    LessonProgress,
    ModuleState,
    ProgressSnapshot,
    clamp,
    is_number,
    resolve_progress_value,
)
from learning_progress.utils.base_types import LessonId, ModuleId

_LOGGER = logging.getLogger(__name__)

LessonRecord = typing.Union[LessonProgress, typing.Mapping[str, typing.Any]]
ModuleStateLike = typing.Union[ModuleState, typing.Mapping[str, typing.Any]]
ProgressByModuleLike = typing.Mapping[str, ModuleStateLike]

_COMPOUND_SPLIT_PATTERN = re.compile(r"[-/]")


def progress_value(record: typing.Optional[LessonRecord]) -> float:
    if isinstance(record, LessonProgress):
        return clamp(record.progress, 0.0, 1.0)
    if isinstance(record, typing.Mapping):
        return resolve_progress_value(record)
    return 0.0


def is_lesson_completed(record: typing.Optional[LessonRecord]) -> bool:
    return progress_value(record) == 1.0


def _lessons_by_id(module_state: typing.Optional[ModuleStateLike]) -> typing.Mapping[str, LessonRecord]:
    if isinstance(module_state, ModuleState):
        return module_state.lessonsById
    if isinstance(module_state, typing.Mapping):
        lessons = module_state.get("lessonsById")
        if isinstance(lessons, typing.Mapping):
            return lessons
    return {}


def _snapshot_lessons(snapshot: typing.Any) -> list[LessonRecord]:
    if isinstance(snapshot, ProgressSnapshot):
        return list(snapshot.lessons)
    if isinstance(snapshot, typing.Mapping) and isinstance(snapshot.get("lessons"), list):
        return snapshot["lessons"]
    return []


def _lesson_id_of(record: LessonRecord) -> typing.Optional[str]:
    if isinstance(record, LessonProgress):
        return record.lessonId
    lesson_id = record.get("lessonId")
    return str(lesson_id) if lesson_id else None


def split_compound_key(lesson_id: str) -> typing.Optional[str]:
    """
    Best-effort "moduleId-lessonId" key for ids that embed their module.

    Splits on "-" and "/", treats the last segment as the lesson and rejoins the rest
    with "-". Ids made only of dashes come back unchanged, e.g.
    "module-02-lesson-03" -> "module-02-lesson-03"; "module-01/intro" -> "module-01-intro".
    """
    parts = _COMPOUND_SPLIT_PATTERN.split(lesson_id)
    if len(parts) < 2:
        return None
    possible_module_id = "-".join(parts[:-1])
    possible_lesson_id = parts[-1]
    return f"{possible_module_id}-{possible_lesson_id}"


def create_progress_map(progress_by_module: ProgressByModuleLike) -> dict[str, dict[str, typing.Any]]:
    progress_map: dict[str, dict[str, typing.Any]] = {}
    for module_id, module_state in progress_by_module.items():
        for lesson_id, lesson in _lessons_by_id(module_state).items():
            value = progress_value(lesson)
            legacy_record = lesson.model_dump() if isinstance(lesson, LessonProgress) else dict(lesson)
            time_spent = legacy_record.get("timeSpent")
            legacy_record.update(
                {
                    "moduleId": module_id,
                    "positionSeconds": int(time_spent) if is_number(time_spent) and time_spent > 0 else 0,
                    "progress": value,
                    "isCompleted": value == 1.0,
                }
            )
            progress_map[lesson_id] = legacy_record
    return progress_map


def get_completed_lessons(
    progress_by_module: ProgressByModuleLike,
    snapshot: typing.Optional[typing.Union[ProgressSnapshot, typing.Mapping[str, typing.Any]]] = None,
) -> set[str]:
    """
    Keys of every completed lesson, as both "moduleId-lessonId" and the bare lessonId.

    Normalized state and the snapshot are unioned: right after a cold load the
    snapshot may know about completions that normalized state does not yet hold.
    """
    completed: set[str] = set()

    for module_id, module_state in progress_by_module.items():
        for lesson_id, lesson in _lessons_by_id(module_state).items():
            if is_lesson_completed(lesson):
                completed.add(f"{module_id}-{lesson_id}")
                completed.add(lesson_id)

    for lesson in _snapshot_lessons(snapshot):
        lesson_id = _lesson_id_of(lesson)
        if not lesson_id or not is_lesson_completed(lesson):
            continue
        completed.add(lesson_id)
        compound_key = split_compound_key(lesson_id)
        if compound_key:
            completed.add(compound_key)

    return completed


def _empty_module_progress() -> dict[str, typing.Any]:
    return {"percent": 0.0, "percentInt": 0, "completedLessons": 0, "totalLessons": 0}


def get_module_progress_legacy(
    progress_by_module: ProgressByModuleLike,
    module_id: typing.Optional[str],
    lesson_ids: typing.Optional[typing.Sequence[str]] = None,
) -> dict[str, typing.Any]:
    """
    Module completion as completed/total lesson counts.

    When `lesson_ids` is given it is the authoritative lesson list, so lessons with
    no record yet still count toward the total.
    """
    if not module_id:
        return _empty_module_progress()

    lessons = _lessons_by_id(progress_by_module.get(module_id))
    if lesson_ids:
        considered = list(dict.fromkeys(lesson_ids))
    else:
        considered = list(lessons.keys())

    total_lessons = len(considered)
    if total_lessons == 0:
        return _empty_module_progress()

    completed_lessons = sum(1 for lesson_id in considered if is_lesson_completed(lessons.get(lesson_id)))
    percent = completed_lessons / total_lessons
    return {
        "percent": percent,
        "percentInt": round(percent * 100),
        "completedLessons": completed_lessons,
        "totalLessons": total_lessons,
    }


def get_curriculum_progress(
    progress_by_module: ProgressByModuleLike,
    modules: typing.Optional[typing.Sequence[typing.Mapping[str, typing.Any]]],
) -> dict[str, dict[str, typing.Any]]:
    """Legacy progress for every module of a curriculum listing (`{id, lessons: [{id}]}`)."""
    if not modules:
        return {}

    curriculum_progress: dict[str, dict[str, typing.Any]] = {}
    for module in modules:
        if not module or not module.get("id"):
            continue
        lesson_ids = [lesson["id"] for lesson in module.get("lessons") or [] if lesson and lesson.get("id")]
        module_id = module["id"]
        curriculum_progress[module_id] = get_module_progress_legacy(progress_by_module, module_id, lesson_ids)
    return curriculum_progress


def convert_legacy_update(
    partial: typing.Mapping[str, typing.Any],
    current_lesson_id: typing.Optional[LessonId] = None,
    current_module_id: typing.Optional[ModuleId] = None,
) -> dict[str, typing.Any]:
    """
    Translate an old `{progress, positionSeconds, isCompleted}` partial into a
    lesson-progress update. `isCompleted` is dropped; completion comes from progress.
    """
    update: dict[str, typing.Any] = {
        "lessonId": partial.get("lessonId") or current_lesson_id,
        "moduleId": partial.get("moduleId") or current_module_id,
    }
    if partial.get("progress") is not None:
        update["progress"] = partial["progress"]
    position_seconds = partial.get("positionSeconds")
    if is_number(position_seconds) and position_seconds > 0:
        update["timeSpentDelta"] = int(position_seconds)
    if "isCompleted" in partial:
        _LOGGER.debug("Ignoring legacy isCompleted flag; completion is derived from progress")
    return update
