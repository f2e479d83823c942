"""
Bounded retries for provider calls.

Only ``ProviderUnavailableException`` is retried; rejections and malformed
payloads are final. The last exception is re-raised once attempts run out.
"""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from core.logging_config import get_logger
from core.settings import PaymentRetry
from domain.common.exceptions import ProviderUnavailableException


logger = get_logger(__name__)

T = TypeVar("T")


def _log_retry(op: str, provider: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "provider_call_retry",
            op=op,
            provider=provider,
            attempt=state.attempt_number,
            outcome_unknown=getattr(exc, "outcome_unknown", None),
            next_wait=round(state.next_action.sleep, 3) if state.next_action else None,
        )

    return before_sleep


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: PaymentRetry,
    op: str,
    provider: str,
) -> T:
    """Run ``fn`` under the retry policy.

    Once any attempt ends with an unknown outcome the request may have been
    applied, so the error finally raised keeps ``outcome_unknown=True`` even
    when the last attempt failed definitely.
    """
    seen_unknown = False

    async def _attempt() -> T:
        nonlocal seen_unknown
        try:
            return await fn()
        except ProviderUnavailableException as exc:
            seen_unknown = seen_unknown or exc.outcome_unknown
            exc.outcome_unknown = seen_unknown
            raise

    retrying = AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter(
            multiplier=policy.base_backoff,
            max=policy.max_backoff,
            jitter=policy.base_backoff,
        ),
        retry=retry_if_exception_type(ProviderUnavailableException),
        before_sleep=_log_retry(op, provider),
    )
    async for attempt in retrying:
        with attempt:
            return await _attempt()
    raise AssertionError("unreachable")  # pragma: no cover
