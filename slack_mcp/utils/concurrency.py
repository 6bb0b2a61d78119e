"""
Bounded concurrency helpers

Runs independent async operations with a hard cap on how many are awaiting
at once. Workers pull the next unstarted item as soon as they finish one, so
a slow item never holds back the rest of a batch.
"""

import asyncio
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, Generic, Iterator, List, Optional,
    Sequence, Tuple, TypeVar
)

from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 3
DEFAULT_BATCH_SIZE = 50

ErrorHandler = Callable[[Exception, int], None]


@dataclass
class IndexedError:
    """A failure mapped back to the position of its input item"""

    index: int
    error: Exception


@dataclass
class ConcurrentProcessingResult(Generic[R]):
    """Outcome of a bounded-concurrency batch"""

    results: List[R] = field(default_factory=list)
    errors: List[IndexedError] = field(default_factory=list)
    total_processed: int = 0

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def failed_indices(self) -> List[int]:
        return [e.index for e in self.errors]


def default_error_handler(error: Exception, index: int) -> None:
    logger.warning("Concurrent operation %d failed: %s", index, error)


def _validate_concurrency(concurrency: int) -> int:
    if isinstance(concurrency, bool) or not isinstance(concurrency, int):
        raise ValueError(f"concurrency must be an integer, got {concurrency!r}")
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")
    return concurrency


def _discard_outcome(task: "asyncio.Task[Any]") -> None:
    # Mark late failures as retrieved so an aborted batch stays quiet
    if not task.cancelled():
        task.exception()


async def _run_bounded(
    items: Sequence[T],
    processor: Callable[[T, int], Awaitable[R]],
    concurrency: int,
    fail_fast: bool,
    error_handler: ErrorHandler,
) -> Dict[int, Tuple[bool, Any]]:
    """
    Worker-pool core shared by every helper in this module

    Returns:
        {index: (succeeded, result_or_exception)} for every item that finished
    """
    outcomes: Dict[int, Tuple[bool, Any]] = {}
    if not items:
        return outcomes

    pending: Iterator[Tuple[int, T]] = iter(enumerate(items))
    aborted = False

    async def worker() -> None:
        # Single event loop: pulling from the shared iterator is race free
        for index, item in pending:
            if aborted:
                return
            try:
                outcomes[index] = (True, await processor(item, index))
            except Exception as e:
                error_handler(e, index)
                if fail_fast:
                    raise
                outcomes[index] = (False, e)

    workers = [
        asyncio.ensure_future(worker())
        for _ in range(min(concurrency, len(items)))
    ]

    if not fail_fast:
        await asyncio.gather(*workers)
        return outcomes

    try:
        done, _ = await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        aborted = True
        for task in workers:
            task.cancel()
        raise

    failures = [
        task.exception() for task in workers
        if task in done and not task.cancelled() and task.exception() is not None
    ]
    if failures:
        aborted = True
        # Siblings still in flight finish on their own; their results are dropped
        for other in workers:
            if not other.done():
                other.add_done_callback(_discard_outcome)
        raise failures[0]

    return outcomes


async def process_concurrently(
    items: Sequence[T],
    processor: Callable[[T, int], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
    fail_fast: bool = False,
    error_handler: Optional[ErrorHandler] = None,
) -> ConcurrentProcessingResult[R]:
    """
    Process items with at most `concurrency` processor calls pending at once

    Args:
        items: Items to process
        processor: Async function called as processor(item, index)
        concurrency: Maximum simultaneous calls (>= 1)
        fail_fast: Re-raise the first failure instead of collecting it
        error_handler: Called synchronously as handler(error, index) for each failure

    Returns:
        Successful results in input order plus the indexed errors

    Raises:
        ValueError: If concurrency is not a positive integer
        Exception: The first processor failure when fail_fast is set

    Example:
        result = await process_concurrently(
            thread_timestamps,
            lambda ts, _: client.conversations_replies(channel, ts),
            concurrency=5
        )
    """
    items = list(items)
    _validate_concurrency(concurrency)
    outcomes = await _run_bounded(
        items, processor, concurrency, fail_fast, error_handler or default_error_handler
    )

    result: ConcurrentProcessingResult[R] = ConcurrentProcessingResult(total_processed=len(items))
    for index in sorted(outcomes):
        succeeded, value = outcomes[index]
        if succeeded:
            result.results.append(value)
        else:
            result.errors.append(IndexedError(index=index, error=value))
    return result


async def process_concurrently_in_batches(
    items: Sequence[T],
    processor: Callable[[T, int], Awaitable[R]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    fail_fast: bool = False,
    error_handler: Optional[ErrorHandler] = None,
) -> ConcurrentProcessingResult[R]:
    """
    Run fixed-size groups one after another, each with bounded concurrency

    The processor and error indices always refer to positions in `items`,
    not positions inside a batch.
    """
    items = list(items)
    _validate_concurrency(concurrency)
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")

    combined: ConcurrentProcessingResult[R] = ConcurrentProcessingResult(total_processed=len(items))

    for offset in range(0, len(items), batch_size):
        batch = items[offset:offset + batch_size]

        async def run_item(item: T, batch_index: int, _offset: int = offset) -> R:
            return await processor(item, _offset + batch_index)

        def on_error(error: Exception, batch_index: int, _offset: int = offset) -> None:
            (error_handler or default_error_handler)(error, _offset + batch_index)

        batch_result = await process_concurrently(
            batch, run_item, concurrency=concurrency, fail_fast=fail_fast, error_handler=on_error
        )

        combined.results.extend(batch_result.results)
        combined.errors.extend(
            IndexedError(index=offset + e.index, error=e.error) for e in batch_result.errors
        )

    return combined


async def map_concurrently(
    items: Sequence[T],
    mapper: Callable[[T, int], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
    error_handler: Optional[ErrorHandler] = None,
) -> List[Optional[R]]:
    """
    Map items with bounded concurrency keeping positional alignment

    Failed items leave None at their index.
    """
    items = list(items)
    _validate_concurrency(concurrency)
    outcomes = await _run_bounded(
        items, mapper, concurrency, False, error_handler or default_error_handler
    )

    mapped: List[Optional[R]] = [None] * len(items)
    for index, (succeeded, value) in outcomes.items():
        if succeeded:
            mapped[index] = value
    return mapped


async def filter_concurrently(
    items: Sequence[T],
    predicate: Callable[[T, int], Awaitable[Any]],
    concurrency: int = DEFAULT_CONCURRENCY,
    error_handler: Optional[ErrorHandler] = None,
) -> List[T]:
    """Keep items whose async predicate returns a truthy value; a raising predicate excludes the item"""
    items = list(items)
    _validate_concurrency(concurrency)
    outcomes = await _run_bounded(
        items, predicate, concurrency, False, error_handler or default_error_handler
    )

    kept = []
    for index, item in enumerate(items):
        succeeded, value = outcomes.get(index, (False, None))
        if succeeded and bool(value):
            kept.append(item)
    return kept
