import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, List, Optional

import requests
from omegaconf import DictConfig

from core.errors import CallFailedAfterRetries, FatalCallFailure, TransientCallFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
RETRYABLE_MESSAGE_MARKERS = [
    'throttl', 'rate is too high', 'rate exceeded', 'too many requests', 'timeout', 'timed out',
    'socket hang up', 'econnreset', 'econnaborted', 'etimedout', 'connection reset',
]


def is_retryable(error: BaseException) -> bool:
    """
    Classify an outbound call failure.

    Rate limiting, throttling, 429/502/503/504 responses, timeouts and connection
    resets are retryable; anything else is fatal.
    """
    status_code = getattr(error, 'status_code', None)
    if isinstance(error, TransientCallFailure):
        return True
    if isinstance(error, FatalCallFailure):
        return status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError,
                          requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    response = getattr(error, 'response', None)
    if response is not None and getattr(response, 'status_code', None) in RETRYABLE_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


@dataclass
class RetryPolicy:
    max_retries: int = 5
    base_delay: float = 2.0         # seconds
    max_delay: float = 30.0         # seconds
    jitter: float = 0.1             # fraction of the delay added at random

    def delay(self, attempt: int) -> float:
        """Backoff before retry number attempt+1 (attempt is 0-based)."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + delay * self.jitter * random.random()


@dataclass
class _QueuedCall:
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    operation: str


class CallExecutor(object):
    """
    Run outbound calls with bounded concurrency, a minimum spacing between call
    starts and exponential backoff on transient failures.

    Calls are served first-in first-out by max_concurrent worker tasks. A retry is
    queued again at the back, so a failing call never blocks the ones behind it
    while it waits out its backoff.

    Args:
        name (str): label used in log messages
        max_concurrent (int): number of calls allowed in flight
        min_interval (float): minimum seconds between two consecutive call starts
        retry (RetryPolicy): retry and backoff settings
        sleep: coroutine used for waiting; tests pass a fake
    """
    def __init__(self, name: str = "executor", max_concurrent: int = 2, min_interval: float = 1.0,
                 retry: Optional[RetryPolicy] = None, sleep=asyncio.sleep, clock=time.monotonic):
        self.name = name
        self.max_concurrent = max(1, max_concurrent)
        self.min_interval = max(0.0, min_interval)
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._gate: Optional[asyncio.Lock] = None
        self._last_start: Optional[float] = None
        self.running = 0

    @classmethod
    def from_config(cls, name: str, section: DictConfig, retry_cfg: DictConfig) -> "CallExecutor":
        retry = RetryPolicy(
            max_retries=retry_cfg.get('max_retries', 5),
            base_delay=retry_cfg.get('base_delay', 2.0),
            max_delay=retry_cfg.get('max_delay', 30.0),
            jitter=retry_cfg.get('jitter', 0.1),
        )
        return cls(name=name, max_concurrent=section.get('max_concurrent', 2),
                   min_interval=section.get('min_interval', 1.0), retry=retry)

    def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._queue is not None and self._workers and self._workers[0].get_loop() is loop \
                and not all(w.done() for w in self._workers):
            return
        self._queue = asyncio.Queue()
        self._gate = asyncio.Lock()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.max_concurrent)
        ]
        logger.debug(f"[{self.name}] started {self.max_concurrent} workers")

    async def _wait_for_slot(self) -> None:
        # spacing is measured between starts, not completions
        async with self._gate:
            if self._last_start is not None:
                wait_time = self._last_start + self.min_interval - self._clock()
                if wait_time > 0:
                    await self._sleep(wait_time)
            self._last_start = self._clock()

    async def _worker(self, worker_id: int) -> None:
        while True:
            item: _QueuedCall = await self._queue.get()
            try:
                if item.future.cancelled():
                    continue
                await self._wait_for_slot()
                self.running += 1
                try:
                    result = await item.fn()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not item.future.done():
                        item.future.set_exception(e)
                else:
                    if not item.future.done():
                        item.future.set_result(result)
                finally:
                    self.running -= 1
            finally:
                self._queue.task_done()

    async def _run_once(self, fn: Callable[[], Awaitable[Any]], operation: str) -> Any:
        self._ensure_started()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_QueuedCall(fn=fn, future=future, operation=operation))
        return await future

    async def submit(self, fn: Callable[..., Any], *args, operation: str = "call", **kwargs) -> Any:
        """
        Run fn(*args, **kwargs) through the queue, retrying transient failures.

        fn may be a coroutine function or a plain callable returning an awaitable.

        Raises:
            CallFailedAfterRetries: when every attempt failed with a retryable error
            Exception: the original error when it is not retryable
        """
        async def call():
            return await fn(*args, **kwargs)

        last_error: Optional[BaseException] = None
        attempts = self.retry.max_retries + 1
        for attempt in range(attempts):
            try:
                return await self._run_once(call, operation)
            except Exception as e:
                last_error = e
                if not is_retryable(e):
                    logger.warning(f"[{self.name}] {operation} failed with non-retryable error: {e}")
                    raise
                if attempt == attempts - 1:
                    break
                delay = self.retry.delay(attempt)
                logger.warning(
                    f"[{self.name}] {operation} attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"[{self.name}] {operation} failed after {attempts} attempts: {last_error}")
        raise CallFailedAfterRetries(operation, attempts, last_error)

    async def run_sync(self, fn: Callable[..., Any], *args, operation: str = "call", **kwargs) -> Any:
        """Like submit, for blocking callables (requests, boto3, file I/O) run in a thread."""
        bound = functools.partial(fn, *args, **kwargs)

        async def call():
            return await asyncio.to_thread(bound)

        return await self.submit(call, operation=operation)

    def status(self) -> dict:
        since_last = None if self._last_start is None else round(self._clock() - self._last_start, 3)
        return {
            'name': self.name,
            'queue_length': self._queue.qsize() if self._queue is not None else 0,
            'running': self.running,
            'max_concurrent': self.max_concurrent,
            'min_interval': self.min_interval,
            'seconds_since_last_start': since_last,
            'retry': asdict(self.retry),
        }

    def is_rate_limited(self) -> bool:
        status = self.status()
        return status['queue_length'] > 0 or status['running'] >= self.max_concurrent

    async def close(self) -> None:
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
