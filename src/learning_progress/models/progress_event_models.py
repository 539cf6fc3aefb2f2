import typing

from pydantic import BaseModel, Field

from learning_progress.utils.base_types import LessonId, ModuleId

PROGRESS_UPDATED_TOPIC = "progress:updated"


class ProgressUpdatedEvent(BaseModel):
    """Published after a lesson's stored progress changes."""

    topic: typing.Literal["progress:updated"] = PROGRESS_UPDATED_TOPIC
    lessonId: LessonId
    moduleId: typing.Optional[ModuleId] = None
    progress: float = Field(..., ge=0.0, le=1.0)
    completionPercentage: float = Field(..., ge=0.0, le=100.0)
    completed: bool
