"""Pipeline orchestrator: single flight, timeout guard, quiet window, boot recovery.

Every trigger (interval tick, daily reset, CLI, boot recovery) goes through
``PipelineOrchestrator.trigger``. At most one job runs per process at a time,
since all jobs write the same three tables; a Valkey lock extends that across
processes when ``distributed_lock_enabled`` is set.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from redis.exceptions import RedisError

from earningstable.cache.distributed_lock import DistributedLock, pipeline_lock
from earningstable.core.config import settings
from earningstable.core.exceptions import NotFoundError, PersistenceError
from earningstable.core.logging import get_logger, run_id_var
from earningstable.domain.pipeline import (
    JobResult,
    JobRunState,
    JobStatus,
    RunContext,
    RunOutcome,
    RunResult,
)
from earningstable.repositories import earnings_orm, reports_orm, run_status_orm

from . import definitions  # noqa: F401  (registers the built-in jobs)
from .definitions import DAILY_RESET_JOB, PIPELINE_JOB
from .dependencies import JobDependencies
from .registry import JobFunc, get_job


logger = get_logger("jobs.orchestrator")

TIMED_OUT = "run timed out"


class PipelineOrchestrator:
    """Runs named jobs with explicit per-job run state.

    Args:
        deps: Shared job collaborators (clock, clients, caches)
        timeout_seconds: Run deadline (defaults to ``run_timeout_seconds``)
        quiet_window_minutes: Interval ticks skipped after a reset
        use_distributed_lock: Overrides ``distributed_lock_enabled``
        lock_factory: Builds the cross-process pipeline lock
        lock_renew_seconds: Lock renewal period while a run is in flight
            (defaults to a third of ``distributed_lock_ttl``)
    """

    def __init__(
        self,
        deps: JobDependencies | None = None,
        timeout_seconds: float | None = None,
        quiet_window_minutes: int | None = None,
        use_distributed_lock: bool | None = None,
        lock_factory: Callable[[], DistributedLock] = pipeline_lock,
        lock_renew_seconds: float | None = None,
    ):
        self.deps = deps or JobDependencies()
        self.window = self.deps.window
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.run_timeout_seconds
        )
        self.quiet_window = timedelta(
            minutes=quiet_window_minutes
            if quiet_window_minutes is not None
            else settings.quiet_window_minutes
        )
        self.use_distributed_lock = (
            use_distributed_lock
            if use_distributed_lock is not None
            else settings.distributed_lock_enabled
        )
        self._lock_factory = lock_factory
        self.lock_renew_seconds = (
            lock_renew_seconds
            if lock_renew_seconds is not None
            else settings.distributed_lock_ttl / 3
        )
        self._states: dict[str, JobRunState] = {}
        self._state_lock = asyncio.Lock()
        self._quiet_until: datetime | None = None
        self._recovered = False
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Run state
    # =========================================================================

    def get_state(self, name: str) -> JobRunState:
        return self._states.get(name) or JobRunState(name=name)

    def states(self) -> dict[str, JobRunState]:
        return dict(self._states)

    @property
    def running_job(self) -> str | None:
        for state in self._states.values():
            if state.is_running:
                return state.name
        return None

    def in_quiet_window(self, now: datetime | None = None) -> bool:
        if self._quiet_until is None:
            return False
        now = now or self.window.now()
        return now < self._quiet_until

    def _expire_overdue(self, now: datetime) -> list[JobRunState]:
        """Force running states past their deadline to error. Caller holds the lock."""
        expired = []
        for state in self._states.values():
            if state.is_running and state.deadline is not None and now >= state.deadline:
                state.status = JobStatus.ERROR
                state.finished_at = now
                state.last_error = TIMED_OUT
                expired.append(state)
                logger.error(f"Job {state.name} passed its deadline, releasing the run flag")
        return expired

    async def _record_started(self, name: str, started_at: datetime) -> None:
        try:
            await run_status_orm.mark_started(name, started_at.astimezone(timezone.utc))
        except PersistenceError as e:
            logger.error(f"Could not record start of {name}: {e.message}")

    async def _record_finished(
        self,
        state: JobRunState,
        duration_ms: int | None = None,
    ) -> None:
        finished_at = state.finished_at or self.window.now()
        try:
            await run_status_orm.mark_finished(
                state.name,
                state.status.value,
                finished_at.astimezone(timezone.utc),
                records_processed=state.records_processed,
                error=state.last_error,
                duration_ms=duration_ms,
            )
        except PersistenceError as e:
            logger.error(f"Could not record result of {state.name}: {e.message}")

    # =========================================================================
    # Trigger
    # =========================================================================

    async def trigger(self, name: str, ctx: RunContext | None = None) -> RunResult:
        """Run job ``name`` unless another run holds the flag."""
        job = get_job(name)
        if job is None:
            raise NotFoundError(f"Unknown job: {name}")
        ctx = ctx or RunContext()

        lock: DistributedLock | None = None
        async with self._state_lock:
            now = self.window.now()
            expired = self._expire_overdue(now)

            running = self.running_job
            if running is not None:
                logger.info(f"Job {name} skipped - already running ({running})")
                skipped = RunResult(
                    name, RunOutcome.SKIPPED_RUNNING, "skipped - already running"
                )
            else:
                skipped = None
                if self.use_distributed_lock:
                    lock = self._lock_factory()
                    try:
                        acquired = await lock.acquire()
                    except RedisError as e:
                        logger.error(f"Job {name} not started, lock backend unavailable: {e}")
                        skipped = RunResult(name, RunOutcome.ERROR, f"lock unavailable: {e}")
                    else:
                        if not acquired:
                            logger.info(f"Job {name} skipped - pipeline lock held elsewhere")
                            skipped = RunResult(
                                name,
                                RunOutcome.SKIPPED_LOCK_HELD,
                                "skipped - running on another instance",
                            )

            if skipped is None:
                run_id = str(uuid.uuid4())
                state = JobRunState(
                    name=name,
                    status=JobStatus.RUNNING,
                    started_at=now,
                    deadline=now + timedelta(seconds=self.timeout_seconds),
                    run_id=run_id,
                )
                self._states[name] = state

        for state_ in expired:
            await self._record_finished(state_)

        if skipped is not None:
            return skipped

        renewer: asyncio.Task | None = None
        if lock is not None:
            renewer = asyncio.create_task(self._renew_lock(lock, name))
        try:
            return await self._run(job, state, ctx)
        finally:
            if renewer is not None:
                renewer.cancel()
                await asyncio.wait({renewer})
            if lock is not None:
                await lock.release()

    async def _renew_lock(self, lock: DistributedLock, name: str) -> None:
        """Keep the pipeline lock from expiring while ``name`` is in flight."""
        while True:
            await asyncio.sleep(self.lock_renew_seconds)
            if not await lock.extend():
                logger.warning(f"Pipeline lock not renewed during {name}")

    async def _run(self, job: JobFunc, state: JobRunState, ctx: RunContext) -> RunResult:
        name = state.name
        await self._record_started(name, state.started_at)
        logger.info(f"Job {name} started (trigger={ctx.trigger}, run={state.run_id})")
        started = time.monotonic()

        task = asyncio.create_task(self._execute(job, ctx, state.run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        done, _ = await asyncio.wait({task}, timeout=self.timeout_seconds)
        duration_ms = int((time.monotonic() - started) * 1000)

        if task not in done:
            async with self._state_lock:
                if state.is_running:
                    state.status = JobStatus.ERROR
                    state.finished_at = self.window.now()
                    state.last_error = TIMED_OUT
            logger.error(f"Job {name} timed out after {duration_ms}ms; leaving it to finish")
            task.add_done_callback(self._late_completion_logger(name, state.run_id))
            await self._record_finished(state, duration_ms)
            return RunResult(name, RunOutcome.ERROR, TIMED_OUT, duration_ms=duration_ms)

        result: JobResult | None = None
        error: BaseException | None = (
            asyncio.CancelledError() if task.cancelled() else task.exception()
        )
        if error is None:
            result = task.result()

        async with self._state_lock:
            # expired by a later trigger while still in flight
            overdue = not state.is_running
            if not overdue:
                state.finished_at = self.window.now()
                if error is None:
                    state.status = JobStatus.SUCCESS
                    state.records_processed = result.records_processed
                    state.last_error = None
                    if name == DAILY_RESET_JOB:
                        self._quiet_until = state.finished_at + self.quiet_window
                else:
                    state.status = JobStatus.ERROR
                    state.last_error = _describe(error)

        if overdue:
            logger.warning(f"Job {name} ({state.run_id}) finished after its deadline")
            return RunResult(name, RunOutcome.ERROR, TIMED_OUT, duration_ms=duration_ms)

        await self._record_finished(state, duration_ms)

        if error is not None:
            logger.error(
                f"Job {name} failed after {duration_ms}ms: {state.last_error}",
                exc_info=(type(error), error, error.__traceback__),
            )
            return RunResult(
                name, RunOutcome.ERROR, state.last_error or "", duration_ms=duration_ms
            )

        logger.info(f"Job {name} completed in {duration_ms}ms: {result.message}")
        return RunResult(
            name, RunOutcome.SUCCESS, result.message, result=result, duration_ms=duration_ms
        )

    async def _execute(self, job: JobFunc, ctx: RunContext, run_id: str | None) -> JobResult:
        run_id_var.set(run_id)
        return await job(ctx, self.deps)

    @staticmethod
    def _late_completion_logger(name: str, run_id: str | None) -> Callable[[asyncio.Task], None]:
        def log(task: asyncio.Task) -> None:
            if task.cancelled():
                logger.warning(f"Timed-out job {name} ({run_id}) was cancelled")
            elif task.exception() is not None:
                logger.warning(
                    f"Timed-out job {name} ({run_id}) finished late with error: "
                    f"{_describe(task.exception())}"
                )
            else:
                logger.warning(f"Timed-out job {name} ({run_id}) finished late")

        return log

    # =========================================================================
    # Schedule entry points
    # =========================================================================

    async def on_interval_tick(self) -> RunResult:
        """Interval trigger: run the pipeline unless quiet or not a trading day."""
        now = self.window.now()
        if self.in_quiet_window(now):
            logger.info(f"Interval tick skipped - quiet window until {self._quiet_until:%H:%M}")
            return RunResult(PIPELINE_JOB, RunOutcome.SKIPPED_QUIET_WINDOW, "skipped - quiet window")
        if not self.window.is_trading_day(now.date()):
            logger.debug(f"Interval tick skipped - {now.date()} is not a trading day")
            return RunResult(
                PIPELINE_JOB, RunOutcome.SKIPPED_NOT_TRADING_DAY, "skipped - not a trading day"
            )
        return await self.trigger(PIPELINE_JOB, RunContext(trigger="interval"))

    async def on_daily_reset(self) -> RunResult:
        return await self.trigger(
            DAILY_RESET_JOB,
            RunContext(allow_clear=settings.allow_clear, trigger="daily_reset"),
        )

    async def recover_on_boot(self) -> RunResult | None:
        """
        Run the daily reset once if stored data predates the current trading day.

        Skipped when the tables are empty, when the data is current, or when
        the stored ``daily_reset`` status shows a successful reset today.
        """
        if self._recovered:
            return None
        self._recovered = True

        day = self.window.trading_day()
        dates = [
            d
            for d in (
                await earnings_orm.latest_report_date(),
                await reports_orm.latest_report_date(),
            )
            if d is not None
        ]
        if not dates:
            logger.info("Boot recovery: no stored data")
            return None

        latest = max(dates)
        if latest >= day:
            logger.info(f"Boot recovery: data is current ({latest})")
            return None

        status = await run_status_orm.get_status(DAILY_RESET_JOB)
        if status and status.status == JobStatus.SUCCESS.value and status.last_finished_at:
            today_start = self.window.midnight(self.window.now().date())
            if self.window.localize(status.last_finished_at) >= today_start:
                logger.info("Boot recovery: reset already ran today")
                return None

        logger.info(f"Boot recovery: stored data is from {latest}, trading day is {day}")
        return await self.trigger(
            DAILY_RESET_JOB,
            RunContext(allow_clear=settings.allow_clear, trigger="boot_recovery"),
        )

    async def shutdown(self) -> None:
        """Cancel runs still in flight (timed-out ones included)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} in-flight job(s)")


def _describe(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__
