import logging
import typing
import uuid

from learning_progress.models.progress_models import (
    LessonProgressUpdateInput,
    OutboxEvent,
)
from learning_progress.utils.base_types import ClientEventId, LessonId, ModuleId
from learning_progress.utils.progress_helpers import now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

MAX_REPLAY_ATTEMPTS = 3


class ProgressOutbox:
    """In-memory FIFO of lesson writes the server has not confirmed."""

    def __init__(self) -> None:
        self._events: dict[ClientEventId, OutboxEvent] = {}

    def __len__(self) -> int:
        return len(self._events)

    def add(
        self,
        lesson_id: LessonId,
        update: LessonProgressUpdateInput,
        module_id: typing.Optional[ModuleId] = None,
        reset: bool = False,
    ) -> OutboxEvent:
        event = OutboxEvent(
            clientEventId=ClientEventId(str(uuid.uuid4())),
            lessonId=lesson_id,
            moduleId=module_id,
            update=update,
            queuedAt=now_iso(),
            reset=reset,
        )
        self._events[event.clientEventId] = event
        _LOGGER.info(
            f"Queued progress write {event.clientEventId} for lesson {lesson_id} "
            f"({len(self._events)} pending)"
        )
        return event

    def remove(self, client_event_id: ClientEventId) -> bool:
        return self._events.pop(client_event_id, None) is not None

    def record_failed_attempt(self, client_event_id: ClientEventId) -> bool:
        """
        Count a failed replay. After MAX_REPLAY_ATTEMPTS the event is dropped.

        :returns: True if the event is still queued
        """
        event = self._events.get(client_event_id)
        if event is None:
            return False

        failed_attempts = event.failedAttempts + 1
        if failed_attempts >= MAX_REPLAY_ATTEMPTS:
            _LOGGER.warning(
                f"Dropping progress write {client_event_id} for lesson {event.lessonId} "
                f"after {failed_attempts} failed attempts"
            )
            del self._events[client_event_id]
            return False

        self._events[client_event_id] = event.model_copy(update={"failedAttempts": failed_attempts})
        return True

    def pending(self) -> list[OutboxEvent]:
        return list(self._events.values())

    def pending_for_lesson(self, lesson_id: LessonId) -> list[OutboxEvent]:
        return [event for event in self._events.values() if event.lessonId == lesson_id]

    def clear(self) -> None:
        self._events.clear()
