"""Process-wide rate-limit gate shared by every batch worker.

The remote quota is shared by the whole process, so throttling is global:
when the last observed ``remaining`` drops below the configured threshold,
the first worker to notice holds the gate's lock while it sleeps until the
advertised reset time.  Every other worker queues on the same lock, so the
entire pool is suspended until the window resets.

Key design choices:

* **Single writer** -- ``observe()`` is synchronous and only ever called on
  the event loop thread (after ``run_sync`` returns), so updates are
  serialised without a second lock.
* **Stale reads tolerated** -- a worker may pass the gate on a slightly
  stale state; the remote then rejects the call with ``RateLimitError``,
  which is fed back through ``observe_rejection()`` and retried.
* **Injectable clock** -- ``clock`` and ``sleep`` can be replaced so tests
  drive a simulated clock.
* **Closable** -- a batch-fatal error closes the gate, so no worker can
  start another remote call; in-flight calls still complete and are
  recorded.
"""

from __future__ import annotations

import asyncio
import logging

from ..errors import RateLimitError, SyncError, describe_reset
from ..models import RateLimitState
from .async_utils import Clock, Sleeper, system_clock

logger = logging.getLogger(__name__)


class GateClosedError(SyncError):
    """The gate was closed by a batch-fatal error; no call may start."""

    error_type = "batch_aborted"
    default_action = "Fix the underlying error and rerun the batch."


class RateLimitGate:
    """Hold the most recent quota state and suspend callers when it is low.

    Args:
        threshold: Suspend when ``remaining`` is strictly below this value.
            An exhausted quota (``remaining == 0``) always suspends.
        clock: Returns the current epoch time in seconds.
        sleep: Awaitable sleep used while suspended.
    """

    def __init__(
        self,
        threshold: int = 0,
        clock: Clock = system_clock,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.threshold = threshold
        self._clock = clock
        self._sleep = sleep
        self._state: RateLimitState | None = None
        self._lock = asyncio.Lock()
        self.suspensions = 0
        self._closed_by: BaseException | None = None

    @property
    def state(self) -> RateLimitState | None:
        """The last accepted quota state (``None`` when unknown)."""
        return self._state

    def is_throttled(self) -> bool:
        """Return ``True`` if the current state is below the threshold."""
        state = self._state
        if state is None or state.remaining is None:
            return False
        # An exhausted quota always blocks, whatever the threshold.
        return state.remaining < max(self.threshold, 1)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_ready(self) -> None:
        """Block until the quota allows another call.

        Returns immediately when the state is unknown or above the
        threshold.  Once the reset time has passed the state is cleared,
        since the new window's quota is only known after the next response.

        Raises:
            GateClosedError: If the gate was closed.
        """
        async with self._lock:
            self._raise_if_closed()
            while self.is_throttled():
                state = self._state
                assert state is not None
                now = self._clock()
                if state.reset_at is None or state.reset_at <= now:
                    self._state = None
                    return

                delay = state.reset_at - now
                self.suspensions += 1
                logger.warning(
                    "Rate limit low (%s remaining < %d); pausing all workers "
                    "for %.1fs until %s",
                    state.remaining,
                    self.threshold,
                    delay,
                    describe_reset(state.reset_at),
                )
                await self._sleep(delay)
                self._raise_if_closed()

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed_by is not None

    def close(self, reason: BaseException) -> None:
        """Refuse every further call until ``reopen()``."""
        self._closed_by = reason

    def reopen(self) -> None:
        self._closed_by = None

    def _raise_if_closed(self) -> None:
        if self._closed_by is not None:
            raise GateClosedError(
                f"Rate-limit gate closed after: {self._closed_by}"
            )

    # ------------------------------------------------------------------
    # Updates (event loop only)
    # ------------------------------------------------------------------

    def observe(self, state: RateLimitState | None) -> None:
        """Record the quota state read from a response.

        Values from an older window, or a higher ``remaining`` within the
        same window, are ignored so out-of-order completions cannot make
        the quota look better than it is.
        """
        if state is None or (
            state.remaining is None and state.reset_at is None
        ):
            return

        current = self._state
        if current is None:
            self._state = state
            return

        if state.reset_at is not None and current.reset_at is not None:
            if state.reset_at < current.reset_at:
                return
            if state.reset_at > current.reset_at:
                self._state = state
                return

        # Same (or unknown) window: remaining only decreases.
        if (
            state.remaining is not None
            and current.remaining is not None
            and state.remaining > current.remaining
        ):
            return
        self._state = state

    def observe_rejection(self, error: RateLimitError) -> None:
        """Force a suspension after the remote rejected a call."""
        reset_at = error.reset_at
        if reset_at is None and error.retry_after is not None:
            reset_at = self._clock() + error.retry_after
        if reset_at is None:
            return
        # A rejection is authoritative for its window.
        self._state = RateLimitState(remaining=0, reset_at=reset_at)
