"""
Status poller: watches a transaction until the callback has moved it to a
terminal state. There is no push channel to the app, so the checkout screen
polls the status endpoint.

The loop is bounded by a timeout and an optional attempt cap; running out
yields TIMED_OUT ("still processing, check back later") instead of polling
forever. cancel() or leaving the async context always stops the task.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_TIMEOUT_SECONDS = 300.0

FetchTransaction = Callable[[str], Awaitable[dict[str, Any] | None]]


class PollState(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    state: PollState
    attempts: int
    transaction: dict[str, Any] | None = None
    failure_reason: str | None = None


class StatusPoller:
    def __init__(
        self,
        fetch: FetchTransaction,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._fetch = fetch
        self.interval = interval
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.attempts = 0

    async def _tick(self, checkout_request_id: str) -> dict[str, Any] | None:
        try:
            return await self._fetch(checkout_request_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # transient read failure: keep polling
            logger.debug(
                "status_poll_failed",
                extra={"checkout_request_id": checkout_request_id, "error": str(e)},
            )
            return None

    async def run(self, checkout_request_id: str) -> PollResult:
        """Poll now, then every `interval` seconds, until a terminal state or the bound is hit."""
        self.attempts = 0
        waited = 0.0
        while True:
            self.attempts += 1
            tx = await self._tick(checkout_request_id)
            status = (tx or {}).get("status")
            if status == PollState.COMPLETED.value:
                return PollResult(PollState.COMPLETED, self.attempts, transaction=tx)
            if status == PollState.FAILED.value:
                return PollResult(
                    PollState.FAILED,
                    self.attempts,
                    transaction=tx,
                    failure_reason=tx.get("failureReason"),
                )

            if self.max_attempts is not None and self.attempts >= self.max_attempts:
                break
            if self.timeout is not None and waited + self.interval > self.timeout:
                break
            await self._sleep(self.interval)
            waited += self.interval

        logger.info(
            "status_poll_timed_out",
            extra={"checkout_request_id": checkout_request_id, "status": "pending"},
        )
        return PollResult(PollState.TIMED_OUT, self.attempts)

    def start(self, checkout_request_id: str) -> asyncio.Task:
        """Schedule run() on the running loop. Must be stopped with cancel() on teardown."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("poller already running")
        self._task = asyncio.get_running_loop().create_task(self.run(checkout_request_id))
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "StatusPoller":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()
