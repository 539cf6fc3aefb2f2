import logging
import typing

from learning_progress.models.progress_models import (
    LessonProgress,
    ModuleState,
    ProgressByModule,
    ProgressSnapshot,
)
from learning_progress.utils.base_types import LessonId, ModuleId
from learning_progress.utils.progress_helpers import group_lessons_by_module

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class ProgressStore:
    """
    Normalized per-module lesson progress for one engine instance.

    Only the mutation service writes here. Lessons with no resolvable module are
    kept in `unassigned` and stay out of module aggregation until a write names
    their module.
    """

    def __init__(self) -> None:
        self._progress_by_module: ProgressByModule = {}
        self._unassigned: dict[LessonId, LessonProgress] = {}

    @property
    def progress_by_module(self) -> ProgressByModule:
        """A deep copy; mutating it does not touch the store."""
        return {
            module_id: module_state.model_copy(deep=True)
            for module_id, module_state in self._progress_by_module.items()
        }

    @property
    def unassigned(self) -> dict[LessonId, LessonProgress]:
        return dict(self._unassigned)

    def find_lesson(
        self, lesson_id: LessonId, module_id: typing.Optional[ModuleId] = None
    ) -> typing.Optional[LessonProgress]:
        if module_id:
            module_state = self._progress_by_module.get(module_id)
            if module_state and lesson_id in module_state.lessonsById:
                return module_state.lessonsById[lesson_id]

        for module_state in self._progress_by_module.values():
            if lesson_id in module_state.lessonsById:
                return module_state.lessonsById[lesson_id]

        return self._unassigned.get(lesson_id)

    def module_of(self, lesson_id: LessonId) -> typing.Optional[ModuleId]:
        for module_id, module_state in self._progress_by_module.items():
            if lesson_id in module_state.lessonsById:
                return module_id
        return None

    def put_lesson(self, record: LessonProgress) -> None:
        """Store a lesson under its module. A lesson lives in exactly one place."""
        if record.moduleId is None:
            self._unassigned[record.lessonId] = record
            return

        if self._unassigned.pop(record.lessonId, None) is not None:
            _LOGGER.info(f"Lesson {record.lessonId} assigned to module {record.moduleId}")

        for module_id in list(self._progress_by_module):
            if module_id == record.moduleId:
                continue
            module_state = self._progress_by_module[module_id]
            if module_state.lessonsById.pop(record.lessonId, None) is None:
                continue
            _LOGGER.info(f"Lesson {record.lessonId} moved from module {module_id} to {record.moduleId}")
            if not module_state.lessonsById:
                del self._progress_by_module[module_id]

        module_state = self._progress_by_module.setdefault(record.moduleId, ModuleState())
        module_state.lessonsById[record.lessonId] = record

    def replace_all(
        self,
        progress_by_module: ProgressByModule,
        unassigned: typing.Optional[dict[LessonId, LessonProgress]] = None,
    ) -> None:
        self._progress_by_module = progress_by_module
        self._unassigned = dict(unassigned or {})

    def replace_from_snapshot(
        self, snapshot: ProgressSnapshot, default_module_id: typing.Optional[ModuleId] = None
    ) -> None:
        progress_by_module, unassigned = group_lessons_by_module(snapshot.lessons, default_module_id)
        self.replace_all(progress_by_module, unassigned)
        _LOGGER.info(
            f"Rebuilt progress store from {snapshot.source} snapshot: "
            f"{len(progress_by_module)} module(s), {len(unassigned)} unassigned lesson(s)"
        )

    def all_lessons(self) -> list[LessonProgress]:
        lessons = [
            lesson
            for module_state in self._progress_by_module.values()
            for lesson in module_state.lessonsById.values()
        ]
        lessons.extend(self._unassigned.values())
        return lessons
