import logging
import time
import typing

from learning_progress.api.progress_api_client import (
    ProgressApiClient,
    ProgressApiError,
    ProgressNetworkError,
    ProgressNotFoundError,
    ProgressRateLimitError,
)
from learning_progress.cache.cache_invalidation import ProgressCacheInvalidator
from learning_progress.events.progress_event_channel import ProgressEventChannel
from learning_progress.models.progress_event_models import ProgressUpdatedEvent
from learning_progress.models.progress_models import (
    LessonProgress,
    LessonProgressUpdateInput,
    ModuleResumePoint,
    OutboxEvent,
    ProgressByModule,
    ProgressSnapshot,
)
from learning_progress.services.progress_outbox import ProgressOutbox
from learning_progress.services.progress_store import ProgressStore
from learning_progress.utils.base_types import LessonId, ModuleId
from learning_progress.utils.env_vars import DEFAULT_RATE_LIMIT_RETRY_SECONDS
from learning_progress.utils.input_validator import (
    ProgressInputValidator,
    ProgressValidationError,
)
from learning_progress.utils.legacy_adapter import convert_legacy_update
from learning_progress.utils.progress_helpers import (
    calculate_optimistic_progress,
    create_default_lesson_progress,
    get_retry_after_seconds,
    infer_module_id_from_lesson,
    initialize_missing_progress,
    merge_server_record,
    should_retry_rate_limited,
)

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

SyncStatus = typing.Literal["idle", "saving", "saved", "offline-queued", "rate-limited", "error"]
UpdateLike = typing.Union[LessonProgressUpdateInput, typing.Mapping[str, typing.Any]]


class ProgressMutationService:
    """
    The only writer of normalized lesson progress.

    A write is applied locally first and then sent to the backend. Local state is
    never rolled back: on a network failure the write is queued in the outbox and
    the error is raised to the caller.
    """

    def __init__(
        self,
        api_client: ProgressApiClient,
        store: ProgressStore,
        cache_invalidator: ProgressCacheInvalidator,
        event_channel: ProgressEventChannel,
        outbox: ProgressOutbox,
        *,
        default_module_id: typing.Optional[ModuleId] = None,
        rate_limit_retry_seconds: float = DEFAULT_RATE_LIMIT_RETRY_SECONDS,
        sleep_fn: typing.Callable[[float], None] = time.sleep,
    ):
        self.api_client = api_client
        self.store = store
        self.cache_invalidator = cache_invalidator
        self.event_channel = event_channel
        self.outbox = outbox
        self.default_module_id = default_module_id
        self.rate_limit_retry_seconds = rate_limit_retry_seconds
        self.sleep_fn = sleep_fn

        self.sync_status: SyncStatus = "idle"
        self.last_sync_error: typing.Optional[str] = None

    @property
    def progress_by_module(self) -> ProgressByModule:
        return self.store.progress_by_module

    def get_lesson(self, lesson_id: LessonId) -> typing.Optional[LessonProgress]:
        return self.store.find_lesson(lesson_id)

    def get_module_resume_point(self, module_id: ModuleId) -> typing.Optional[ModuleResumePoint]:
        return self.api_client.get_module_resume_point(module_id)

    def _set_status(self, status: SyncStatus, error: typing.Optional[Exception] = None) -> None:
        self.sync_status = status
        self.last_sync_error = str(error) if error is not None else None

    def _resolve_module_id(
        self, lesson_id: LessonId, update: LessonProgressUpdateInput
    ) -> typing.Optional[ModuleId]:
        if update.moduleId:
            return update.moduleId
        fallback_module_id = self.store.module_of(lesson_id) or self.default_module_id
        return infer_module_id_from_lesson(lesson_id, default_module_id=fallback_module_id)

    def _put_with_rate_limit_retry(self, lesson_id: LessonId, body: dict[str, typing.Any]) -> LessonProgress:
        attempt = 0
        while True:
            try:
                return self.api_client.put_lesson_progress(lesson_id, body)
            except ProgressRateLimitError as e:
                if not should_retry_rate_limited(attempt):
                    raise
                delay = get_retry_after_seconds(e, self.rate_limit_retry_seconds)
                _LOGGER.warning(f"Rate limited writing lesson {lesson_id}; retrying in {delay}s")
                self._set_status("rate-limited", e)
                self.sleep_fn(delay)
                attempt += 1

    def _apply_server_record(
        self, lesson_id: LessonId, module_id: typing.Optional[ModuleId], server_record: LessonProgress
    ) -> LessonProgress:
        merged = merge_server_record(self.store.find_lesson(lesson_id, module_id), server_record, module_id)
        self.store.put_lesson(merged)
        return merged

    def _publish(self, record: LessonProgress) -> None:
        self.event_channel.publish(
            ProgressUpdatedEvent(
                lessonId=record.lessonId,
                moduleId=record.moduleId,
                progress=record.progress,
                completionPercentage=record.completionPercentage,
                completed=record.completed,
            )
        )

    def update_lesson_progress(
        self,
        lesson_id: LessonId,
        update: UpdateLike,
        *,
        reset: bool = False,
    ) -> LessonProgress:
        """
        Apply one lesson write locally, send it, and fold the response back in.

        :raises ProgressValidationError: Before any state change if the input is malformed
        :raises ProgressNetworkError: The write stays applied locally and is queued
        :raises ProgressRateLimitError: If the single retry is rate limited again
        :raises ProgressApiError: For other rejected writes; local state stands
        """
        lesson_id = LessonId(ProgressInputValidator.validate_identifier(lesson_id, "lessonId"))
        parsed_update = ProgressInputValidator.validate_update(update)
        module_id = self._resolve_module_id(lesson_id, parsed_update)
        if module_id is None:
            _LOGGER.warning(f"No module resolved for lesson {lesson_id}; keeping it out of module totals")

        current = self.store.find_lesson(lesson_id, module_id)
        if current is None:
            current = create_default_lesson_progress(lesson_id, module_id)
        optimistic = calculate_optimistic_progress(current, parsed_update, module_id=module_id, reset=reset)
        self.store.put_lesson(optimistic)
        self._set_status("saving")

        request_body = parsed_update.to_request_body()
        if module_id:
            request_body["moduleId"] = module_id
        if reset:
            request_body["reset"] = True
        queued_update = parsed_update.model_copy(update={"moduleId": module_id})

        try:
            server_record = self._put_with_rate_limit_retry(lesson_id, request_body)
        except ProgressNotFoundError:
            _LOGGER.info(f"Lesson {lesson_id} has no progress on the server yet; queueing write")
            current = self.store.find_lesson(lesson_id, module_id)
            record = initialize_missing_progress(current, lesson_id, module_id)
            self.store.put_lesson(record)
            self.outbox.add(lesson_id, queued_update, module_id, reset=reset)
            self._set_status("offline-queued")
            self._publish(record)
            return record
        except ProgressNetworkError as e:
            _LOGGER.warning(f"Network error writing lesson {lesson_id}; keeping local progress and queueing write")
            self.outbox.add(lesson_id, queued_update, module_id, reset=reset)
            self._set_status("offline-queued", e)
            raise
        except ProgressRateLimitError as e:
            _LOGGER.error(f"Lesson {lesson_id} write still rate limited after retry")
            self._set_status("rate-limited", e)
            raise
        except ProgressApiError as e:
            _LOGGER.error(f"Lesson {lesson_id} write failed with status {e.status_code}: {str(e)}")
            self._set_status("error", e)
            raise

        merged = self._apply_server_record(lesson_id, module_id, server_record)
        self.cache_invalidator.invalidate_progress_cache(module_id, lesson_id)
        self._set_status("saved")
        self._publish(merged)
        return merged

    def reset_lesson_progress(
        self, lesson_id: LessonId, module_id: typing.Optional[ModuleId] = None
    ) -> LessonProgress:
        update = LessonProgressUpdateInput(progress=0.0, moduleId=module_id)
        return self.update_lesson_progress(lesson_id, update, reset=True)

    def mark_lesson_complete(
        self,
        lesson_id: LessonId,
        module_id: typing.Optional[ModuleId] = None,
        time_spent_delta: typing.Optional[int] = None,
    ) -> LessonProgress:
        update: dict[str, typing.Any] = {"progress": 1.0}
        if module_id:
            update["moduleId"] = module_id
        if time_spent_delta:
            update["timeSpentDelta"] = time_spent_delta
        return self.update_lesson_progress(lesson_id, update)

    def apply_legacy_update(
        self,
        partial: typing.Mapping[str, typing.Any],
        current_lesson_id: typing.Optional[LessonId] = None,
        current_module_id: typing.Optional[ModuleId] = None,
    ) -> LessonProgress:
        """Route an old `{progress, positionSeconds, isCompleted}` partial through the regular write path."""
        converted = convert_legacy_update(partial, current_lesson_id, current_module_id)
        lesson_id = converted.pop("lessonId")
        if not lesson_id:
            raise ProgressValidationError("Legacy progress update has no lesson id")
        if converted.get("moduleId") is None:
            converted.pop("moduleId", None)
        return self.update_lesson_progress(lesson_id, converted)

    def apply_snapshot(self, snapshot: ProgressSnapshot) -> None:
        """Rebuild normalized state wholesale from a snapshot."""
        self.store.replace_from_snapshot(snapshot, self.default_module_id)

    def _replay(self, event: OutboxEvent) -> LessonProgress:
        request_body = event.update.to_request_body()
        if event.moduleId:
            request_body["moduleId"] = event.moduleId
        if event.reset:
            request_body["reset"] = True
        server_record = self.api_client.put_lesson_progress(event.lessonId, request_body)
        return self._apply_server_record(event.lessonId, event.moduleId, server_record)

    def reconcile_outbox(self) -> int:
        """
        Replay queued writes in order.

        Confirmed writes are removed. A network error or rate limit stops the pass and
        leaves the rest queued; other failures count against the write's attempt limit.

        :returns: The number of writes the server confirmed
        """
        pending = self.outbox.pending()
        if not pending:
            return 0

        _LOGGER.info(f"Reconciling {len(pending)} queued progress write(s)")
        self._set_status("saving")
        confirmed = 0

        for event in pending:
            try:
                merged = self._replay(event)
            except ProgressNetworkError as e:
                _LOGGER.warning(f"Still offline; {len(self.outbox)} write(s) stay queued")
                self._set_status("offline-queued", e)
                return confirmed
            except ProgressRateLimitError as e:
                _LOGGER.warning(f"Rate limited during reconciliation; {len(self.outbox)} write(s) stay queued")
                self._set_status("rate-limited", e)
                return confirmed
            except ProgressApiError as e:
                _LOGGER.warning(f"Replay of {event.clientEventId} for lesson {event.lessonId} failed: {str(e)}")
                self.outbox.record_failed_attempt(event.clientEventId)
                continue

            self.outbox.remove(event.clientEventId)
            self.cache_invalidator.invalidate_progress_cache(event.moduleId, event.lessonId)
            self._publish(merged)
            confirmed += 1

        self._set_status("saved" if len(self.outbox) == 0 else "offline-queued")
        _LOGGER.info(f"Reconciled {confirmed} of {len(pending)} queued progress write(s)")
        return confirmed
