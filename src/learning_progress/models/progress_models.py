import math
import typing

import pydantic
from pydantic import BaseModel, Field

from learning_progress.utils.base_types import (
    ClientEventId,
    IsoTimestamp,
    LessonId,
    ModuleId,
    UserId,
)

SnapshotSource = typing.Literal["server", "local"]

# Transport field names for the same concept, in priority order.
_LESSON_ID_KEYS = ("lessonId", "leccionId")
_MODULE_ID_KEYS = ("moduleId", "moduloId")
_FRACTION_KEYS = ("progress", "progreso")
_PERCENTAGE_KEYS = ("completionPercentage", "progressPercentage", "porcentajeCompletado")
_TIME_SPENT_KEYS = ("timeSpent", "tiempoInvertido")
_LAST_ACCESSED_KEYS = ("lastAccessed", "lastAccess", "lastAccessedAt")
_UPDATED_AT_KEYS = ("updatedAt", "serverUpdatedAt")


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def is_number(value: typing.Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _first_present(raw: typing.Mapping[str, typing.Any], keys: typing.Iterable[str]) -> typing.Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _first_number(raw: typing.Mapping[str, typing.Any], keys: typing.Iterable[str]) -> typing.Optional[float]:
    for key in keys:
        if is_number(raw.get(key)):
            return float(raw[key])
    return None


def resolve_progress_value(raw: typing.Mapping[str, typing.Any]) -> float:
    """
    The one fallback chain for a lesson's progress: the 0-1 fraction if numeric,
    else the 0-100 percentage divided by 100, else 0. Always clamped to [0, 1].
    A `completed` flag is never consulted.
    """
    fraction = _first_number(raw, _FRACTION_KEYS)
    if fraction is not None:
        return clamp(fraction, 0.0, 1.0)

    percentage = _first_number(raw, _PERCENTAGE_KEYS)
    if percentage is not None:
        return clamp(percentage / 100.0, 0.0, 1.0)

    return 0.0


class LessonProgress(BaseModel):
    """
    Normalized progress record for one (user, lesson).

    Every raw payload (snapshot entries, server write responses, legacy map entries)
    goes through `normalize_transport_record`, so `progress` is always set and
    `completionPercentage` / `completed` are always derived from it.
    """

    lessonId: LessonId
    moduleId: typing.Optional[ModuleId] = None
    progress: float = Field(0.0, ge=0.0, le=1.0)
    completionPercentage: float = Field(0.0, ge=0.0, le=100.0)
    completed: bool = False
    timeSpent: int = Field(0, ge=0)
    scrollPosition: typing.Optional[float] = None
    lastViewedSection: typing.Optional[str] = None
    lastAccessed: typing.Optional[IsoTimestamp] = None
    updatedAt: typing.Optional[IsoTimestamp] = None

    @pydantic.model_validator(mode="before")
    @classmethod
    def normalize_transport_record(cls, data: typing.Any) -> typing.Any:
        if not isinstance(data, typing.Mapping):
            return data

        progress = resolve_progress_value(data)
        time_spent = _first_present(data, _TIME_SPENT_KEYS)

        return {
            "lessonId": _first_present(data, _LESSON_ID_KEYS),
            "moduleId": _first_present(data, _MODULE_ID_KEYS),
            "progress": progress,
            "completionPercentage": round(progress * 100.0, 4),
            "completed": progress == 1.0,
            "timeSpent": int(time_spent) if is_number(time_spent) and time_spent > 0 else 0,
            "scrollPosition": data.get("scrollPosition"),
            "lastViewedSection": data.get("lastViewedSection"),
            "lastAccessed": _first_present(data, _LAST_ACCESSED_KEYS),
            "updatedAt": _first_present(data, _UPDATED_AT_KEYS),
        }


class LessonProgressUpdateInput(BaseModel):
    """
    Body of a single lesson-progress write. Out-of-range progress values are clamped
    rather than rejected; `completed` is accepted but carries no meaning.
    """

    model_config = pydantic.ConfigDict(extra="forbid")

    progress: typing.Optional[float] = None
    completionPercentage: typing.Optional[float] = None
    timeSpentDelta: int = Field(0, ge=0)
    scrollPosition: typing.Optional[float] = None
    lastViewedSection: typing.Optional[str] = None
    moduleId: typing.Optional[ModuleId] = None
    completed: typing.Optional[bool] = None

    @pydantic.field_validator("progress", "completionPercentage")
    @classmethod
    def clamp_progress_fields(
        cls, v: typing.Optional[float], info: pydantic.ValidationInfo
    ) -> typing.Optional[float]:
        if v is None:
            return None
        if not math.isfinite(v):
            raise ValueError(f"{info.field_name} must be a finite number")
        upper = 1.0 if info.field_name == "progress" else 100.0
        return clamp(v, 0.0, upper)

    def resolved_progress(self) -> typing.Optional[float]:
        """The incoming 0-1 progress, or None when the write does not touch progress."""
        if self.progress is not None:
            return self.progress
        if self.completionPercentage is not None:
            return self.completionPercentage / 100.0
        return None

    def to_request_body(self) -> dict[str, typing.Any]:
        body: dict[str, typing.Any] = {"timeSpentDelta": self.timeSpentDelta}
        progress = self.resolved_progress()
        if progress is not None:
            body["progress"] = progress
            body["completionPercentage"] = round(progress * 100.0, 4)
        if self.scrollPosition is not None:
            body["scrollPosition"] = self.scrollPosition
        if self.lastViewedSection is not None:
            body["lastViewedSection"] = self.lastViewedSection
        if self.moduleId is not None:
            body["moduleId"] = self.moduleId
        return body


class ModuleState(BaseModel):
    lessonsById: dict[LessonId, LessonProgress] = Field(default_factory=dict)


ProgressByModule = dict[ModuleId, ModuleState]


class ModuleProgressModel(BaseModel):
    moduleId: typing.Optional[ModuleId] = None
    completedLessons: int = Field(0, ge=0)
    totalLessons: int = Field(0, ge=0)
    progress: float = Field(0.0, ge=0.0, le=1.0)
    isCompleted: bool = False

    @property
    def percent(self) -> float:
        return self.progress


class CalendarDay(BaseModel):
    date: str
    hasActivity: bool = False
    lessonsCompleted: int = 0


class ProgressOverview(BaseModel):
    xpTotal: int = 0
    level: int = 1
    nextLevelXp: int = 0
    streakDays: int = 0
    completedLessons: int = 0
    totalLessons: int = 0
    modulesCompleted: int = 0
    totalModules: int = 0
    calendar: list[CalendarDay] = Field(default_factory=list)


class ProgressSnapshot(BaseModel):
    userId: typing.Optional[UserId] = None
    overview: ProgressOverview = Field(default_factory=ProgressOverview)
    lessons: list[LessonProgress] = Field(default_factory=list)
    source: SnapshotSource = "server"
    lastSyncAt: typing.Optional[IsoTimestamp] = None


class ModuleResumePoint(BaseModel):
    lessonId: LessonId
    moduleId: ModuleId
    lessonTitle: typing.Optional[str] = None
    lessonOrder: typing.Optional[int] = None
    completionPercentage: float = 0.0
    scrollPosition: typing.Optional[float] = None
    lastViewedSection: typing.Optional[str] = None


class OutboxEvent(BaseModel):
    """A lesson write that has not been confirmed by the server yet."""

    clientEventId: ClientEventId
    lessonId: LessonId
    moduleId: typing.Optional[ModuleId] = None
    update: LessonProgressUpdateInput
    queuedAt: IsoTimestamp
    reset: bool = False
    failedAttempts: int = Field(0, ge=0)
