"""Batch processor: run one orchestrator operation over many items.

Execution model
---------------
A fixed pool of ``max_concurrent`` asyncio worker tasks drains a queue of
items.  Each worker handles one item at a time:

1. Checks cancellation, then waits on the shared ``RateLimitGate`` (the
   whole pool suspends while the quota is below the threshold).
2. Runs the operation.  ``TransientError`` (network failures and
   rate-limit rejections) is retried up to ``max_retries`` times with
   ``delay = min(base * 2^(attempt-1), max)``; cancellation is checked
   between attempts.
3. Records the terminal outcome and fires ``on_progress`` exactly once.

Key design choices:

* **Per-item isolation** -- any non-fatal error marks only that item
  failed; the batch carries on.
* **Fatal abort** -- ``AuthError`` or ``MappingStoreError`` closes the
  rate-limit gate so no further remote call starts, lets in-flight calls
  finish (their mappings are still recorded), and raises
  ``BatchAbortedError`` carrying the partial result.  Items without a
  terminal outcome count as ``aborted``.
* **Dry run** -- no adapter call and no mapping store mutation; the result
  is shaped like a live one, with an estimated duration.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from ..config import Config
from ..core.async_utils import Sleeper, backoff_delay, run_sync
from ..core.rate_limit import GateClosedError
from ..errors import (
    AuthError,
    BatchAbortedError,
    MappingStoreError,
    SyncError,
    TransientError,
)
from ..models import (
    BatchError,
    BatchResult,
    RemoteItem,
    WorkItem,
    item_identity,
)
from .engine import SyncOrchestrator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, Any], None]

OPERATIONS = ("push", "pull", "bidirectional")

FATAL_ERRORS = (AuthError, MappingStoreError)


@dataclass
class RateLimitOptions:
    """Throttle and retry tuning for one batch."""

    threshold: int = 10
    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30_000


@dataclass
class BatchOptions:
    """Options for ``BatchProcessor.run``.

    Attributes:
        max_concurrent: Worker pool size (in-flight items).
        rate_limit: Throttle threshold and retry/backoff settings.
        dry_run: Count and estimate only; no remote call, no store write.
        on_progress: ``(current, total, item)`` after each terminal outcome.
        avg_item_latency_ms: Per-item latency assumed for dry-run estimates.
        cancel_event: Set it to stop picking up new items.
    """

    max_concurrent: int = 10
    rate_limit: RateLimitOptions = field(default_factory=RateLimitOptions)
    dry_run: bool = False
    on_progress: ProgressCallback | None = None
    avg_item_latency_ms: float = 500.0
    cancel_event: asyncio.Event | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(
                f"max_concurrent must be >= 1, got {self.max_concurrent}"
            )
        if self.rate_limit.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> BatchOptions:
        """Build options from the runtime ``Config``."""
        values: dict[str, Any] = {
            "max_concurrent": config.max_concurrent,
            "rate_limit": RateLimitOptions(
                threshold=config.rate_limit_threshold,
                max_retries=config.max_retries,
                base_delay_ms=config.base_delay_ms,
                max_delay_ms=config.max_delay_ms,
            ),
            "avg_item_latency_ms": config.avg_item_latency_ms,
        }
        values.update(overrides)
        return cls(**values)


class _Cancelled(Exception):
    """Internal: the batch was cancelled while an item was being retried."""


class _Run:
    """Mutable bookkeeping for one batch invocation."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.succeeded = 0
        self.failed = 0
        self.errors: list[BatchError] = []
        self.fatal: SyncError | None = None

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed


class BatchProcessor:
    """Run an orchestrator operation over a collection of items.

    Args:
        orchestrator: The orchestrator whose per-item methods are invoked.
        sleep: Awaitable sleep used for retry backoff (tests inject one).
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self._sleep = sleep
        self._cancel = asyncio.Event()

    def cancel(self) -> None:
        """Stop the current run from picking up new items.

        In-flight items finish.  The signal is cleared when the next
        ``run()`` starts.
        """
        self._cancel.set()

    def _cancelled(self, options: BatchOptions) -> bool:
        return self._cancel.is_set() or (
            options.cancel_event is not None and options.cancel_event.is_set()
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        items: Iterable[Any],
        operation: str,
        options: BatchOptions | None = None,
    ) -> BatchResult:
        """Process *items* with *operation* and return the aggregate result.

        Args:
            items: WorkItems or local ids (``push``, ``bidirectional``),
                remote ids or RemoteItems (``pull``).
            operation: ``"push"``, ``"pull"`` or ``"bidirectional"``.
            options: Batch options (defaults apply when omitted).

        Raises:
            BatchAbortedError: On ``AuthError`` or ``MappingStoreError``.
            ValueError: For an unknown operation.
        """
        if operation not in OPERATIONS:
            raise ValueError(
                f"Unknown operation '{operation}': must be one of "
                f"{', '.join(OPERATIONS)}"
            )
        self._cancel.clear()
        options = options or BatchOptions()
        items = list(items)
        started = time.perf_counter()

        if options.dry_run:
            return self._dry_run(items, operation, options, started)

        gate = self.orchestrator.rate_gate
        gate.threshold = options.rate_limit.threshold
        handler = self._handler(operation)

        queue: asyncio.Queue[Any] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        run = _Run(len(items))

        def stopped() -> bool:
            return run.fatal is not None or self._cancelled(options)

        async def worker() -> None:
            while not stopped():
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await gate.wait_ready()
                    if stopped():
                        return
                    await self._attempt(handler, item, options, stopped)
                except (_Cancelled, GateClosedError):
                    # No terminal outcome: the item counts as aborted.
                    return
                except FATAL_ERRORS as exc:
                    if run.fatal is None:
                        run.fatal = exc
                        gate.close(exc)
                        logger.error(
                            "Batch '%s' aborted by %s on %s: %s",
                            operation,
                            exc.error_type,
                            item_identity(item),
                            exc,
                        )
                    self._fail(run, item, exc, options)
                    return
                except SyncError as exc:
                    self._fail(run, item, exc, options)
                except Exception as exc:
                    logger.exception(
                        "Unexpected error on %s", item_identity(item)
                    )
                    self._fail(run, item, exc, options)
                else:
                    run.succeeded += 1
                    self._progress(run, item, options)

        pool_size = min(options.max_concurrent, max(len(items), 1))
        try:
            await asyncio.gather(*(worker() for _ in range(pool_size)))
        finally:
            gate.reopen()

        result = BatchResult(
            operation=operation,
            total=run.total,
            succeeded=run.succeeded,
            failed=run.failed,
            aborted=run.total - run.completed,
            duration_ms=(time.perf_counter() - started) * 1000,
            errors=run.errors,
            rate_limit_state=gate.state,
            cancelled=run.fatal is None and run.completed < run.total,
        )
        logger.info(
            "Batch '%s' finished: %d/%d succeeded, %d failed, %d aborted "
            "in %.0fms",
            operation,
            result.succeeded,
            result.total,
            result.failed,
            result.aborted,
            result.duration_ms,
        )
        if run.fatal is not None:
            raise BatchAbortedError(
                f"Batch '{operation}' aborted: {run.fatal}", result=result
            )
        return result

    # ------------------------------------------------------------------
    # Per-item execution
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        handler: Callable[[Any], Awaitable[Any]],
        item: Any,
        options: BatchOptions,
        stopped: Callable[[], bool],
    ) -> Any:
        """Run *handler* on *item*, retrying transient errors.

        Raises:
            _Cancelled: If the batch stopped between two attempts.
        """
        retry = options.rate_limit
        attempt = 0
        while True:
            try:
                return await handler(item)
            except TransientError as exc:
                attempt += 1
                if attempt > retry.max_retries:
                    logger.warning(
                        "Giving up on %s after %d retries: %s",
                        item_identity(item),
                        retry.max_retries,
                        exc,
                    )
                    raise
                delay = backoff_delay(
                    attempt, retry.base_delay_ms, retry.max_delay_ms
                )
                logger.debug(
                    "Retry %d/%d for %s in %.2fs (%s)",
                    attempt,
                    retry.max_retries,
                    item_identity(item),
                    delay,
                    exc.error_type,
                )
                if stopped():
                    raise _Cancelled() from exc
                await self._sleep(delay)
                if stopped():
                    raise _Cancelled() from exc

    def _handler(self, operation: str) -> Callable[[Any], Awaitable[Any]]:
        orch = self.orchestrator

        async def push(item: Any) -> Any:
            return await orch.push_to_remote(await self._resolve_local(item))

        async def pull(item: Any) -> Any:
            remote_id = item.remote_id if isinstance(item, RemoteItem) else item
            pulled = await orch.pull_from_remote(str(remote_id))
            if pulled is not None:
                await self._write_local(pulled)
            return pulled

        async def bidirectional(item: Any) -> Any:
            outcome = await orch.sync_bidirectional(
                await self._resolve_local(item)
            )
            if outcome.item is not None:
                await self._write_local(outcome.item)
            return outcome

        match operation:
            case "push":
                return push
            case "pull":
                return pull
            case _:
                return bidirectional

    async def _resolve_local(self, item: Any) -> WorkItem:
        if isinstance(item, WorkItem):
            return item
        local_store = self.orchestrator.local_store
        if local_store is None:
            raise ValueError(
                f"Cannot resolve local id '{item}' without a local store"
            )
        return await run_sync(local_store.read_entity, str(item))

    async def _write_local(self, item: WorkItem) -> None:
        local_store = self.orchestrator.local_store
        if local_store is not None:
            await run_sync(local_store.write_entity, item)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _fail(
        self, run: _Run, item: Any, exc: Exception, options: BatchOptions
    ) -> None:
        run.failed += 1
        run.errors.append(
            BatchError(
                item=item_identity(item),
                error_type=getattr(exc, "error_type", "unexpected_error"),
                error=str(exc),
            )
        )
        self._progress(run, item, options)

    @staticmethod
    def _progress(run: _Run, item: Any, options: BatchOptions) -> None:
        if options.on_progress is not None:
            options.on_progress(run.completed, run.total, item)

    def _dry_run(
        self,
        items: list[Any],
        operation: str,
        options: BatchOptions,
        started: float,
    ) -> BatchResult:
        total = len(items)
        for index, item in enumerate(items, start=1):
            if options.on_progress is not None:
                options.on_progress(index, total, item)
        estimate = (
            math.ceil(total / options.max_concurrent)
            * options.avg_item_latency_ms
        )
        logger.info(
            "Dry run '%s': %d items, estimated %.0fms", operation, total, estimate
        )
        return BatchResult(
            operation=operation,
            total=total,
            succeeded=total,
            duration_ms=(time.perf_counter() - started) * 1000,
            estimated_duration_ms=estimate,
            rate_limit_state=self.orchestrator.rate_gate.state,
            dry_run=True,
        )


async def batch_run(
    orchestrator: SyncOrchestrator,
    items: Iterable[Any],
    operation: str,
    options: BatchOptions | None = None,
) -> BatchResult:
    """Caller-facing entry point: run *operation* over *items*.

    Example:
        result = await batch_run(orch, items, "bidirectional",
                                 BatchOptions(max_concurrent=5))
        print(result.summary())
    """
    return await BatchProcessor(orchestrator).run(items, operation, options)
