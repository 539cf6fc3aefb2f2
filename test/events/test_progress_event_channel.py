from unittest.mock import Mock

import pydantic
import pytest

from learning_progress.events.progress_event_channel import ProgressEventChannel
from learning_progress.models.progress_event_models import (
    PROGRESS_UPDATED_TOPIC,
    ProgressUpdatedEvent,
)


def create_event(progress: float = 1.0) -> ProgressUpdatedEvent:
    return ProgressUpdatedEvent(
        lessonId="l1",
        moduleId="m1",
        progress=progress,
        completionPercentage=progress * 100,
        completed=progress == 1.0,
    )


def test_event_topic():
    assert create_event().topic == PROGRESS_UPDATED_TOPIC == "progress:updated"


def test_event_rejects_out_of_range_progress():
    with pytest.raises(pydantic.ValidationError):
        create_event(progress=1.2)


def test_publish_reaches_all_subscribers_in_order():
    channel = ProgressEventChannel()
    received = []
    channel.subscribe(lambda event: received.append(("first", event.lessonId)))
    channel.subscribe(lambda event: received.append(("second", event.lessonId)))

    channel.publish(create_event())

    assert received == [("first", "l1"), ("second", "l1")]


def test_unsubscribe():
    channel = ProgressEventChannel()
    handler = Mock()
    unsubscribe = channel.subscribe(handler)

    unsubscribe()
    unsubscribe()
    channel.publish(create_event())

    handler.assert_not_called()
    assert channel.subscriber_count == 0


def test_failing_handler_is_isolated():
    channel = ProgressEventChannel()
    good = Mock()
    channel.subscribe(Mock(side_effect=RuntimeError("boom")))
    channel.subscribe(good)

    event = create_event()
    channel.publish(event)

    good.assert_called_once_with(event)
