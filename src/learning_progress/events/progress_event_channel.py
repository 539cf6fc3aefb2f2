import logging
import typing

from learning_progress.models.progress_event_models import ProgressUpdatedEvent

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

ProgressEventHandler = typing.Callable[[ProgressUpdatedEvent], None]


class ProgressEventChannel:
    """
    Typed observer for `progress:updated` notifications.

    Handlers run synchronously in subscription order. A handler that raises is logged
    and skipped; the remaining handlers still receive the event.
    """

    def __init__(self) -> None:
        self._handlers: list[ProgressEventHandler] = []

    def subscribe(self, handler: ProgressEventHandler) -> typing.Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def publish(self, event: ProgressUpdatedEvent) -> None:
        _LOGGER.debug(f"Publishing {event.topic} for lesson {event.lessonId}")
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                _LOGGER.error(
                    f"Progress event handler failed for lesson {event.lessonId}: {str(e)}",
                    exc_info=True,
                )
