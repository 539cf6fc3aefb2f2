import logging
import os
import typing

_LOGGER = logging.getLogger(__name__)

DEFAULT_API_TIMEOUT_SECONDS = 8.0
DEFAULT_RATE_LIMIT_RETRY_SECONDS = 5.0


def _get_resource_by_env_var(env_var: str) -> str:
    value = os.environ.get(env_var)
    if not value:
        raise ValueError(f"Missing environment variable: {env_var}")
    return value


def _get_float_env_var(env_var: str, default: float) -> float:
    raw_value = os.environ.get(env_var)
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        _LOGGER.warning(f"Invalid value for {env_var}: {raw_value}. Using default {default}.")
        return default
    if value <= 0:
        _LOGGER.warning(f"Non-positive value for {env_var}: {raw_value}. Using default {default}.")
        return default
    return value


def get_progress_api_base_url() -> str:
    return _get_resource_by_env_var("PROGRESS_API_BASE_URL")


def get_progress_api_timeout_seconds() -> float:
    return _get_float_env_var("PROGRESS_API_TIMEOUT_SECONDS", DEFAULT_API_TIMEOUT_SECONDS)


def get_rate_limit_retry_seconds() -> float:
    """
    Delay used when a 429 response carries no Retry-After hint.
    """
    return _get_float_env_var("PROGRESS_RATE_LIMIT_RETRY_SECONDS", DEFAULT_RATE_LIMIT_RETRY_SECONDS)


def get_default_module_id() -> typing.Optional[str]:
    return os.environ.get("PROGRESS_DEFAULT_MODULE_ID") or None
