import logging
import typing
from dataclasses import dataclass

from learning_progress.api.progress_api_client import ProgressApiClient
from learning_progress.cache.cache_invalidation import ProgressCacheInvalidator
from learning_progress.cache.progress_cache import ProgressCache
from learning_progress.events.progress_event_channel import ProgressEventChannel
from learning_progress.services.progress_mutation_service import ProgressMutationService
from learning_progress.services.progress_outbox import ProgressOutbox
from learning_progress.services.progress_store import ProgressStore
from learning_progress.services.snapshot_loader import SnapshotLoader
from learning_progress.utils.base_types import AuthTokenProvider, ModuleId, UserId
from learning_progress.utils.env_vars import (
    get_default_module_id,
    get_progress_api_base_url,
    get_progress_api_timeout_seconds,
    get_rate_limit_retry_seconds,
)

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


@dataclass
class ProgressEngine:
    api_client: ProgressApiClient
    cache: ProgressCache
    cache_invalidator: ProgressCacheInvalidator
    event_channel: ProgressEventChannel
    store: ProgressStore
    outbox: ProgressOutbox
    mutation_service: ProgressMutationService
    snapshot_loader: SnapshotLoader


def build_progress_engine(
    auth_token_provider: typing.Optional[AuthTokenProvider] = None,
    user_id: typing.Optional[UserId] = None,
    sleep_fn: typing.Optional[typing.Callable[[float], None]] = None,
) -> ProgressEngine:
    """
    Wire one engine from environment configuration.

    :raises ValueError: If PROGRESS_API_BASE_URL is not set
    """
    base_url = get_progress_api_base_url()
    default_module_id = get_default_module_id()

    api_client = ProgressApiClient(
        base_url,
        auth_token_provider=auth_token_provider,
        timeout_seconds=get_progress_api_timeout_seconds(),
    )
    cache = ProgressCache(api_client.fetch_path)
    cache_invalidator = ProgressCacheInvalidator(cache)
    event_channel = ProgressEventChannel()
    store = ProgressStore()
    outbox = ProgressOutbox()

    service_kwargs: dict[str, typing.Any] = {
        "default_module_id": ModuleId(default_module_id) if default_module_id else None,
        "rate_limit_retry_seconds": get_rate_limit_retry_seconds(),
    }
    if sleep_fn is not None:
        service_kwargs["sleep_fn"] = sleep_fn
    mutation_service = ProgressMutationService(
        api_client, store, cache_invalidator, event_channel, outbox, **service_kwargs
    )
    snapshot_loader = SnapshotLoader(api_client, mutation_service, user_id=user_id)

    _LOGGER.info(f"Progress engine configured for {base_url}")
    return ProgressEngine(
        api_client=api_client,
        cache=cache,
        cache_invalidator=cache_invalidator,
        event_channel=event_channel,
        store=store,
        outbox=outbox,
        mutation_service=mutation_service,
        snapshot_loader=snapshot_loader,
    )
