"""
Pytest configuration and fixtures for all tests.

This file contains fixtures that are automatically available to all test files.
"""

import os
import typing
from unittest.mock import Mock

import pytest

from learning_progress.cache.cache_invalidation import ProgressCacheInvalidator
from learning_progress.events.progress_event_channel import ProgressEventChannel
from learning_progress.models.progress_models import LessonProgress
from learning_progress.services.progress_mutation_service import ProgressMutationService
from learning_progress.services.progress_outbox import ProgressOutbox
from learning_progress.services.progress_store import ProgressStore


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """
    Sets up environment variables required for all tests.

    Runs once per session. Tests that need a different value use monkeypatch.
    """
    os.environ["PROGRESS_API_BASE_URL"] = "https://api.test.example/api"
    os.environ["PROGRESS_API_TIMEOUT_SECONDS"] = "8"
    os.environ["PROGRESS_RATE_LIMIT_RETRY_SECONDS"] = "5"
    os.environ.pop("PROGRESS_DEFAULT_MODULE_ID", None)

    yield


def _echo_put_lesson_progress(lesson_id: str, payload: dict) -> LessonProgress:
    return LessonProgress.model_validate({**payload, "lessonId": lesson_id})


@pytest.fixture
def echo_put_lesson_progress() -> typing.Callable[[str, dict], LessonProgress]:
    """Server stub that persists exactly what it was sent."""
    return _echo_put_lesson_progress


@pytest.fixture
def api_client(echo_put_lesson_progress) -> Mock:
    client = Mock()
    client.put_lesson_progress.side_effect = echo_put_lesson_progress
    client.has_auth_token.return_value = True
    return client


@pytest.fixture
def sleep_fn() -> Mock:
    return Mock()


@pytest.fixture
def mutation_service(api_client: Mock, sleep_fn: Mock) -> ProgressMutationService:
    cache_invalidator = Mock(spec=ProgressCacheInvalidator)
    return ProgressMutationService(
        api_client,
        ProgressStore(),
        cache_invalidator,
        ProgressEventChannel(),
        ProgressOutbox(),
        rate_limit_retry_seconds=5,
        sleep_fn=sleep_fn,
    )


@pytest.fixture
def published_events(mutation_service: ProgressMutationService) -> typing.Iterator[list]:
    events: list = []
    unsubscribe = mutation_service.event_channel.subscribe(events.append)
    yield events
    unsubscribe()
