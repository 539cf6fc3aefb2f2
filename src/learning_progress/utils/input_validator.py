import logging
import typing

import pydantic

from learning_progress.models.progress_models import LessonProgressUpdateInput

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class ProgressValidationError(ValueError):
    pass


class ProgressInputValidator:
    """
    Validates progress writes before anything touches local state or the network.

    Checks:
    - Identifier presence and length limits
    - Control characters and whitespace inside identifiers
    - Update body shape (delegated to pydantic)
    """

    MAX_LENGTHS = {
        "lessonId": 200,
        "moduleId": 200,
        "lastViewedSection": 500,
    }

    @classmethod
    def validate_identifier(cls, value: typing.Any, field_name: str) -> str:
        """
        :raises ProgressValidationError: If the identifier is unusable as a lesson/module key
        """
        if not isinstance(value, str):
            raise ProgressValidationError(f"{field_name} must be a string")

        stripped = value.strip()
        if not stripped:
            raise ProgressValidationError(f"{field_name} is required")

        max_length = cls.MAX_LENGTHS.get(field_name, 200)
        if len(stripped) > max_length:
            _LOGGER.warning(f"Length violation: {field_name} is {len(stripped)} chars (max {max_length})")
            raise ProgressValidationError(f"{field_name} exceeds maximum length of {max_length} characters")

        if any(ord(c) < 32 or c.isspace() for c in stripped):
            raise ProgressValidationError(f"{field_name} contains whitespace or control characters")

        return stripped

    @classmethod
    def validate_update(
        cls,
        update: typing.Union[LessonProgressUpdateInput, typing.Mapping[str, typing.Any]],
    ) -> LessonProgressUpdateInput:
        """
        Coerce a raw update into `LessonProgressUpdateInput`.

        :raises ProgressValidationError: If the update has the wrong shape
        """
        if isinstance(update, LessonProgressUpdateInput):
            parsed = update
        elif isinstance(update, typing.Mapping):
            try:
                parsed = LessonProgressUpdateInput.model_validate(dict(update))
            except pydantic.ValidationError as e:
                _LOGGER.warning(f"Rejected progress update: {e.errors()}")
                raise ProgressValidationError(f"Invalid progress update: {e.errors()}") from e
        else:
            raise ProgressValidationError("Progress update must be a mapping")

        if parsed.moduleId is not None:
            cls.validate_identifier(parsed.moduleId, "moduleId")

        if parsed.lastViewedSection is not None:
            max_length = cls.MAX_LENGTHS["lastViewedSection"]
            if len(parsed.lastViewedSection) > max_length:
                raise ProgressValidationError(
                    f"lastViewedSection exceeds maximum length of {max_length} characters"
                )

        return parsed
