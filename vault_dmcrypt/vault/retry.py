"""
Retry Executor — bounded retry with a fixed delay and cooperative cancellation.

An operation is attempted at most ``max_attempts + 1`` times. Cancellation is
signalled through an ``asyncio.Event`` and is checked before every attempt,
including the first, and while waiting between attempts. A pre-cancelled
event therefore results in zero attempts.

Timeouts are not handled here: callers bound the whole retry loop with
``asyncio.timeout``, which surfaces as ``TimeoutError`` and never as
``CancellationError``.
"""
import asyncio
import logging
from dataclasses import dataclass
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..exceptions import CancellationError, RetryExhausted, VaultDmCryptError

logger = logging.getLogger("vault_dmcrypt.vault")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Number of retries after the first attempt and the delay between them."""

    max_attempts: int = 3
    delay: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")
        if self.delay < 0:
            raise ValueError("delay cannot be negative")


def is_retryable(err: BaseException) -> bool:
    if isinstance(err, VaultDmCryptError):
        return err.retryable
    return True


class RetryExecutor:
    """Runs coroutine functions under a ``RetryPolicy``."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    async def _wait(self, cancel: asyncio.Event | None) -> bool:
        """Sleep for the policy delay. Returns True if cancelled meanwhile."""
        if cancel is None:
            await asyncio.sleep(self.policy.delay)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.policy.delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel: asyncio.Event | None = None,
    ) -> T:
        """Await ``operation()`` until it succeeds or the policy is exhausted.

        Args:
            operation: Zero-argument coroutine function.
            cancel: Optional event; once set no further attempt is made.

        Returns:
            The operation's result.

        Raises:
            CancellationError: If ``cancel`` is set before an attempt or
                during a wait.
            RetryExhausted: If every attempt failed.
            VaultDmCryptError: Non-retryable errors are raised unchanged.
        """
        last_error: BaseException | None = None
        attempts = 0

        for attempt in range(self.policy.max_attempts + 1):
            if attempt > 0:
                logger.warning(
                    "Retrying Vault operation (attempt %d of %d, delay %.1fs)",
                    attempt, self.policy.max_attempts, self.policy.delay,
                )
                if await self._wait(cancel):
                    raise CancellationError(attempts) from last_error
            if cancel is not None and cancel.is_set():
                raise CancellationError(attempts) from last_error

            attempts += 1
            try:
                return await operation()
            except Exception as err:
                if not is_retryable(err):
                    raise
                last_error = err
                logger.debug("Vault operation failed (attempt %d): %s", attempt, err)

        raise RetryExhausted(last_error, self.policy.max_attempts) from last_error
