# src/vmsync/clients/retry.py
"""Backoff policy for ingestion uploads, built on tenacity.

Only the caller knows which failures are transient, so the predicate is
passed per call. Once attempts run out the last error propagates as-is,
keeping ConnectivityError and UploadError visible to the exporters.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

if TYPE_CHECKING:
    from vmsync.core.config import RetrySettings

T = TypeVar("T")

RetryHook = Callable[[int, BaseException], None]


@dataclass(frozen=True)
class RetryConfig:
    """Upload retry policy.

    max_attempts counts every try, the first one included.
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    jitter: float = 1.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> RetryConfig:
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryConfig:
        """Map the ingest.retry settings section. Jitter is not configurable."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
        )


def _report_to(hook: RetryHook) -> Callable[[RetryCallState], None]:
    """Adapt a (attempt, error) hook to tenacity's before_sleep signature."""

    def _before_sleep(state: RetryCallState) -> None:
        assert state.outcome is not None
        error = state.outcome.exception()
        assert error is not None
        hook(state.attempt_number, error)

    return _before_sleep


class RetryManager:
    """Run callables under a RetryConfig.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))
        status = manager.execute_with_retry(
            lambda: client.post_once(payload),
            is_retryable=lambda e: isinstance(e, ConnectivityError),
        )
    """

    def __init__(self, config: RetryConfig) -> None:
        self._config = config

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: RetryHook | None = None,
    ) -> T:
        """Call operation until it succeeds, fails permanently or attempts run out.

        on_retry fires before each backoff sleep, so never for the final
        attempt or for a non-retryable error.

        Raises:
            Exception: The first non-retryable error, or the last retryable
                one once attempts are exhausted
        """
        config = self._config
        retrying = Retrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential_jitter(
                initial=config.base_delay,
                max=config.max_delay,
                exp_base=config.exponential_base,
                jitter=config.jitter,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=_report_to(on_retry) if on_retry is not None else None,
            reraise=True,
        )
        return retrying(operation)
