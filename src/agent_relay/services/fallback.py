import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from agent_relay.observability.structured_log import log_json
from agent_relay.providers.registry import ProviderBehavior

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[Optional[str]], Awaitable[T]]
Notify = Callable[[str], None]


def fallback_notice_message(behavior: ProviderBehavior) -> str:
    return (
        f"{behavior.display_name} local auth failed. Retrying with your fallback API key. "
        f"{behavior.reauth_hint}."
    )


class FallbackRetryController(Generic[T]):
    """Re-runs an attempt once with a fallback credential after an auth failure.

    ``attempt(None)`` is the first run with the CLI's own login. A second run,
    ``attempt(credential)``, happens only when ``is_auth_failure`` accepts the
    first result, the credential is non-empty and the provider has an API-key
    variable to carry it. ``notify`` is called exactly once, before the retry.
    The retry's result is returned as-is.
    """

    def __init__(self, is_auth_failure: Callable[[T], bool]):
        self._is_auth_failure = is_auth_failure

    async def run(
        self,
        attempt: Attempt,
        *,
        behavior: ProviderBehavior,
        credential: Optional[str],
        notify: Notify,
    ) -> T:
        first = await attempt(None)
        if not self._is_auth_failure(first):
            return first
        if not (credential or "").strip() or not behavior.api_key_env_var:
            log_json(logger, "fallback.unavailable", provider=behavior.kind.value)
            return first
        log_json(logger, "fallback.retry", provider=behavior.kind.value, env_var=behavior.api_key_env_var)
        notify(fallback_notice_message(behavior))
        return await attempt(credential.strip())
