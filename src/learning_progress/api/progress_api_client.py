import logging
import typing

import pydantic
import requests

from learning_progress.models.progress_models import (
    LessonProgress,
    ModuleProgressModel,
    ModuleResumePoint,
    ProgressOverview,
    ProgressSnapshot,
)
from learning_progress.utils.base_types import (
    AuthTokenProvider,
    LessonId,
    ModuleId,
    UserId,
)
from learning_progress.utils.env_vars import DEFAULT_API_TIMEOUT_SECONDS

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class ProgressApiError(Exception):
    def __init__(self, msg: str, status_code: typing.Optional[int] = None) -> None:
        super().__init__(msg)
        self.status_code = status_code


class ProgressNetworkError(ProgressApiError):
    """The backend could not be reached (offline, refused connection, timeout)."""


class ProgressRateLimitError(ProgressApiError):
    def __init__(self, msg: str, retry_after: typing.Optional[float] = None) -> None:
        super().__init__(msg, 429)
        self.retry_after = retry_after


class ProgressNotFoundError(ProgressApiError):
    def __init__(self, msg: str) -> None:
        super().__init__(msg, 404)


class ProgressServerError(ProgressApiError):
    pass


def _parse_retry_after(response: requests.Response, payload: typing.Any) -> typing.Optional[float]:
    header_value = response.headers.get("Retry-After") if response.headers else None
    candidates = [header_value]
    if isinstance(payload, dict):
        candidates.append(payload.get("retryAfter"))
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            return float(candidate)
        except (TypeError, ValueError):
            _LOGGER.warning(f"Ignoring unparseable retryAfter value: {candidate}")
    return None


def _error_message(payload: typing.Any, status_code: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or f"Request failed with status {status_code}")
        if error:
            return str(error)
        if payload.get("message"):
            return str(payload["message"])
    elif isinstance(payload, str) and payload:
        return payload
    return f"Request failed with status {status_code}"


def _unwrap(payload: typing.Any) -> typing.Any:
    """Strip the backend's `{"success": true, "data": ...}` envelope when present."""
    if isinstance(payload, dict) and payload.get("success") is True and "data" in payload:
        return payload["data"]
    return payload


class ProgressApiClient:
    """
    Thin wrapper around the progress REST endpoints.

    Auth is injected through `auth_token_provider`; the client never reads tokens
    from ambient storage.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token_provider: typing.Optional[AuthTokenProvider] = None,
        timeout_seconds: float = DEFAULT_API_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token_provider = auth_token_provider
        self.timeout_seconds = timeout_seconds

    def get_auth_token(self) -> typing.Optional[str]:
        if self.auth_token_provider is None:
            return None
        return self.auth_token_provider() or None

    def has_auth_token(self) -> bool:
        return self.get_auth_token() is not None

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.get_auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(self, method: str, path: str, json_body: typing.Optional[dict] = None) -> typing.Any:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                json=json_body,
                headers=self._build_headers(),
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout:
            _LOGGER.error(f"{method} {path} timed out after {self.timeout_seconds}s")
            raise ProgressNetworkError(f"Progress service request timed out: {method} {path}")
        except requests.exceptions.ConnectionError as e:
            _LOGGER.error(f"{method} {path} could not connect: {e}")
            raise ProgressNetworkError(f"Could not connect to progress service at {self.base_url}")
        except requests.exceptions.RequestException as e:
            _LOGGER.error(f"{method} {path} failed: {e}")
            raise ProgressNetworkError(f"Failed to communicate with progress service: {str(e)}")

        try:
            payload = response.json()
        except ValueError:
            payload = getattr(response, "text", None)

        status_code = response.status_code
        if status_code == 429:
            retry_after = _parse_retry_after(response, payload)
            _LOGGER.warning(f"{method} {path} rate limited (retryAfter={retry_after})")
            raise ProgressRateLimitError(_error_message(payload, status_code), retry_after)
        if status_code == 404:
            raise ProgressNotFoundError(_error_message(payload, status_code))
        if status_code >= 500:
            _LOGGER.error(f"{method} {path} server error {status_code}: {payload}")
            raise ProgressServerError(_error_message(payload, status_code), status_code)
        if status_code >= 400:
            _LOGGER.error(f"{method} {path} rejected with {status_code}: {payload}")
            raise ProgressApiError(_error_message(payload, status_code), status_code)

        return _unwrap(payload)

    def fetch_path(self, path: str) -> typing.Any:
        """Generic JSON GET; used as the reactive cache's fetcher."""
        return self._request("GET", path)

    def fetch_snapshot(self) -> ProgressSnapshot:
        data = self._request("GET", "/progress/overview")
        if not isinstance(data, dict):
            raise ProgressApiError("Progress overview response was not a JSON object")

        # The overview endpoint answers either flat or as {overview, lessons}.
        overview_data = data.get("overview") if isinstance(data.get("overview"), dict) else data
        overview = ProgressOverview.model_validate(overview_data)

        lessons: list[LessonProgress] = []
        for raw_lesson in data.get("lessons") or []:
            try:
                lessons.append(LessonProgress.model_validate(raw_lesson))
            except pydantic.ValidationError as ve:
                _LOGGER.warning(f"Skipping invalid snapshot lesson: {raw_lesson}. Error: {ve}")

        user_id = data.get("userId")
        return ProgressSnapshot(
            userId=UserId(str(user_id)) if user_id else None,
            overview=overview,
            lessons=lessons,
            source="server",
            lastSyncAt=data.get("lastSyncAt"),
        )

    def put_lesson_progress(self, lesson_id: LessonId, payload: dict[str, typing.Any]) -> LessonProgress:
        data = self._request("PUT", f"/progress/lesson/{lesson_id}", json_body=payload)
        if isinstance(data, dict):
            # Responses may nest the record next to module aggregates.
            for nested_key in ("lessonProgress", "progress"):
                if isinstance(data.get(nested_key), dict):
                    data = data[nested_key]
                    break
        else:
            data = {}

        return LessonProgress.model_validate({**data, "lessonId": data.get("lessonId") or lesson_id})

    def get_lesson_progress(self, lesson_id: LessonId) -> LessonProgress:
        try:
            data = self._request("GET", f"/progress/lessons/{lesson_id}")
        except ProgressNotFoundError:
            _LOGGER.info(f"No progress recorded yet for lesson {lesson_id}, using default")
            return LessonProgress(lessonId=lesson_id)

        if isinstance(data, dict) and isinstance(data.get("progress"), dict):
            data = data["progress"]
        if not isinstance(data, dict):
            return LessonProgress(lessonId=lesson_id)
        return LessonProgress.model_validate({**data, "lessonId": data.get("lessonId") or lesson_id})

    def get_module_progress(self, module_id: ModuleId) -> ModuleProgressModel:
        try:
            data = self._request("GET", f"/progress/modules/{module_id}")
        except ProgressNotFoundError:
            _LOGGER.info(f"No progress recorded yet for module {module_id}, using default")
            return ModuleProgressModel(moduleId=module_id)

        if isinstance(data, dict) and isinstance(data.get("progress"), dict):
            data = data["progress"]
        if not isinstance(data, dict):
            return ModuleProgressModel(moduleId=module_id)

        # Percentages and completion flags from the server are not trusted; only counts are.
        completed_lessons = int(data.get("completedLessons") or 0)
        total_lessons = int(data.get("totalLessons") or 0)
        percent = completed_lessons / total_lessons if total_lessons > 0 else 0.0
        return ModuleProgressModel(
            moduleId=module_id,
            completedLessons=completed_lessons,
            totalLessons=total_lessons,
            progress=min(percent, 1.0),
            isCompleted=total_lessons > 0 and completed_lessons >= total_lessons,
        )

    def get_module_resume_point(self, module_id: ModuleId) -> typing.Optional[ModuleResumePoint]:
        try:
            data = self._request("GET", f"/progress/modules/{module_id}/resume")
        except ProgressNotFoundError:
            return None

        if not isinstance(data, dict) or not data:
            return None
        try:
            return ModuleResumePoint.model_validate({"moduleId": module_id, **data})
        except pydantic.ValidationError as ve:
            _LOGGER.warning(f"Invalid resume point for module {module_id}: {ve}")
            return None
