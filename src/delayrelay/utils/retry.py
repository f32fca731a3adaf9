# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delay schedule shared by connection establishment and message republishing.

    Args:
        max_retries: Maximum number of retry attempts, None retries forever
        initial_delay: Delay in seconds before the first retry (default: 1.0)
        max_delay: Upper bound for the delay between retries (default: 60.0)
        backoff_factor: Multiplier applied to the delay after each retry (default: 2.0)
        jitter: Whether to add ±25% randomness to the delay (default: True)
    """

    max_retries: int | None = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be zero or positive")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be zero or positive")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be at least 1.0")

    def can_retry(self, retry_count: int) -> bool:
        """Whether a retry numbered `retry_count` (zero based) is still allowed."""
        return self.max_retries is None or retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """Delay in seconds to wait before the retry numbered `retry_count`."""
        delay = min(
            self.initial_delay * (self.backoff_factor**retry_count),
            self.max_delay,
        )

        if self.jitter and delay > 0:
            jitter_amount = delay * 0.25
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            # Ensure delay doesn't go negative due to jitter
            delay = max(delay, 0.1)

        return delay


E = TypeVar("E", bound=Exception)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    retry_policy: Optional[RetryPolicy] = None,
    on_retry_callback: Optional[Callable[[int, E, float], None]] = None,
    retry_exceptions: tuple[type[E], ...] = (),
) -> T:
    """
    Execute a function with exponential backoff retry mechanism.

    Args:
        fn: The async function to execute with retry
        retry_policy: Configuration for the retry mechanism
        on_retry_callback: Optional callback function called on each retry with retry count, exception, and next delay
        retry_exceptions: Tuple of exception types that should trigger a retry

    Returns:
        The result of the function if successful

    Raises:
        The last exception encountered if all retries fail
    """
    if retry_policy is None:
        retry_policy = RetryPolicy()

    retry_count = 0

    while True:
        try:
            return await fn()
        except retry_exceptions as e:
            if not retry_policy.can_retry(retry_count):
                logger.error(
                    "Max retries (%s) exceeded: %s", retry_policy.max_retries, e
                )
                raise

            delay = retry_policy.delay_for(retry_count)

            logger.warning(
                "Retry %s/%s after error: %s. Retrying in %.2fs",
                retry_count + 1,
                retry_policy.max_retries,
                e,
                delay,
            )

            if on_retry_callback:
                on_retry_callback(retry_count, e, delay)

            await asyncio.sleep(delay)
            retry_count += 1
