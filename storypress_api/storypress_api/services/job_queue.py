"""Durable at-least-once job queue backed by the ``jobs`` table.

Producers enqueue inside their own transaction, so a job exists if and
only if the state change that triggered it was committed.  The
:class:`JobRunner` background task claims due jobs with a conditional
UPDATE, runs the registered handler and then:

* marks the job ``done`` when the handler returns normally;
* reschedules it with exponential backoff when the handler raises, until
  ``max_attempts`` is reached and the job is retired as ``dead``.

A worker that dies mid-job leaves the row ``running``; once its lock is
older than the visibility timeout another runner reclaims it.  Handlers
must therefore be idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.retry import RetryConfig, compute_delay
from storypress_core.state.database import session_scope
from storypress_core.state.repository import JobRepository

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class JobName:
    """Registered job names."""

    ORDER_PAID = "order.paid"


class JobQueue:
    """Enqueue jobs within the caller's transaction.

    Parameters
    ----------
    session:
        Session whose commit makes the job visible to runners.
    max_attempts:
        Attempts allowed before a job is retired.
    """

    def __init__(self, session: AsyncSession, *, max_attempts: int = 5) -> None:
        self._repo = JobRepository(session)
        self._max_attempts = max_attempts

    async def enqueue(self, name: str, payload: dict[str, Any]) -> str:
        job_id = await self._repo.enqueue(name, payload, max_attempts=self._max_attempts)
        logger.info("Enqueued job %s id=%s payload=%s", name, job_id, payload)
        return job_id

    async def enqueue_order_paid(self, order_id: str) -> str:
        return await self.enqueue(JobName.ORDER_PAID, {"order_id": order_id})


class JobRunner:
    """AsyncIO background task that executes queued jobs.

    Parameters
    ----------
    session_factory:
        Factory for the claim and settlement transactions.
    handlers:
        Mapping of job name to async handler taking the job payload.
    retry_config:
        Backoff between failed attempts.
    poll_interval:
        Seconds between polls when the queue is idle.
    visibility_timeout:
        Seconds after which a ``running`` job is considered abandoned.
    batch_size:
        Maximum jobs claimed per poll.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: dict[str, JobHandler],
        *,
        retry_config: RetryConfig | None = None,
        poll_interval: float = 5.0,
        visibility_timeout: float = 900.0,
        batch_size: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = dict(handlers)
        self._retry_config = retry_config or RetryConfig()
        self._poll_interval = poll_interval
        self._visibility_timeout = visibility_timeout
        self._batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the runner loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the runner background task."""
        if self._running:
            logger.warning("JobRunner already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobRunner started (handlers=%s)", sorted(self._handlers))

    async def stop(self) -> None:
        """Stop the runner gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("JobRunner stopped")

    async def run_pending(self) -> int:
        """Claim and execute every currently due job once.

        Returns
        -------
        int
            Number of jobs this call executed.
        """
        now = datetime.now(UTC)
        stale_before = now - timedelta(seconds=self._visibility_timeout)
        async with session_scope(self._session_factory) as session:
            job_ids = await JobRepository(session).due_ids(now=now, stale_before=stale_before, limit=self._batch_size)

        executed = 0
        for job_id in job_ids:
            if await self._run_job(job_id, now=now, stale_before=stale_before):
                executed += 1
        return executed

    async def _run_loop(self) -> None:
        while self._running:
            executed = 0
            try:
                executed = await self.run_pending()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("JobRunner database error: %s", exc, exc_info=True)
            if executed < self._batch_size:
                await asyncio.sleep(self._poll_interval)

    async def _run_job(self, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session)
            if not await repo.claim(job_id, now=now, stale_before=stale_before):
                return False
            job = await repo.get(job_id)
            assert job is not None  # noqa: S101
            # attempts already counts this claim.
            name, payload, attempt, max_attempts = job.name, dict(job.payload), job.attempts, job.max_attempts

        handler = self._handlers.get(name)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for job {name!r}")
            await handler(payload)
        except Exception as exc:
            retry_at: datetime | None = None
            if attempt < max_attempts:
                retry_at = datetime.now(UTC) + timedelta(seconds=compute_delay(attempt - 1, self._retry_config))
            logger.warning(
                "Job %s id=%s failed (attempt %d/%d): %s",
                name,
                job_id,
                attempt,
                max_attempts,
                exc,
            )
            async with session_scope(self._session_factory) as session:
                await JobRepository(session).mark_failed(
                    job_id,
                    error=str(exc) or exc.__class__.__name__,
                    retry_at=retry_at,
                )
            if retry_at is None:
                logger.error("Job %s id=%s retired after %d attempts", name, job_id, attempt)
            return True

        async with session_scope(self._session_factory) as session:
            await JobRepository(session).mark_done(job_id)
        logger.info("Job %s id=%s done", name, job_id)
        return True
