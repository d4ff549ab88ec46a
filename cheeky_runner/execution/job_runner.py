"""
Job Runner for Cheeky CI
Drives one job end-to-end: sandbox creation, fail-fast step sequencing,
per-step deadlines and guaranteed teardown.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import structlog

from cheeky_runner.config import RunnerConfig, get_runner_config
from cheeky_runner.errors import (
    InfrastructureError,
    JobCancelledError,
    JobSpecError,
    RunnerClosedError,
    RunnerError,
    StepFailure,
    TeardownError,
)
from cheeky_runner.execution.base import Executor, Sandbox
from cheeky_runner.jobspec.source import JobSource
from cheeky_runner.models import JobSpec, StepResult, StepSpec

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(Enum):
    """Lifecycle states for a job run"""
    IDLE = "idle"               # Registered, no sandbox yet
    RUNNING = "running"         # Sandbox obtained, steps executing
    SUCCEEDED = "succeeded"     # Every step exited 0
    FAILED = "failed"           # Infra error, step failure or cancellation
    TERMINATED = "terminated"   # Sandbox released (or never created)


@dataclass
class StepRun:
    """One executed step and what it produced"""
    step: StepSpec
    result: StepResult
    started_at: datetime
    ended_at: datetime

    @property
    def name(self) -> str:
        return self.step.name


@dataclass
class JobRun:
    """Context holding all data for a single job run"""
    job: JobSpec
    state: JobState = JobState.IDLE
    outcome: Optional[JobState] = None
    step_runs: List[StepRun] = field(default_factory=list)
    error: Optional[RunnerError] = None
    teardown_error: Optional[TeardownError] = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def succeeded(self) -> bool:
        return self.outcome == JobState.SUCCEEDED

    @property
    def executed_steps(self) -> List[str]:
        return [run.name for run in self.step_runs]

    @property
    def step_results(self) -> List[StepResult]:
        return [run.result for run in self.step_runs]

    @property
    def failed_step(self) -> Optional[str]:
        if self.outcome == JobState.FAILED and self.step_runs:
            last = self.step_runs[-1]
            if not last.result.succeeded:
                return last.name
        return None


class JobRunner:
    """
    Runs jobs against an Executor.

    Each job owns exactly one sandbox for its lifetime; steps run strictly
    in declared order and the first failure skips the rest.
    """

    def __init__(
        self,
        executor: Executor,
        job_source: Optional[JobSource] = None,
        config: Optional[RunnerConfig] = None
    ):
        self.executor = executor
        self.job_source = job_source
        self.config = config or get_runner_config()
        self.jobs: Dict[str, JobRun] = {}
        self._active: Dict[str, JobRun] = {}
        self._state_lock = asyncio.Lock()
        self._accepting = True
        self._stop_event = asyncio.Event()

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def run(self) -> List[JobRun]:
        """
        Pull jobs from the job source and run them one at a time
        until the source is exhausted or shutdown() is called.
        """
        if self.job_source is None:
            raise RunnerError("JobRunner.run() needs a job source")

        logger.info("runner_started", executor=self.executor.name)
        runs: List[JobRun] = []

        while self._accepting:
            next_job = asyncio.ensure_future(self.job_source.next_job())
            stopped = asyncio.ensure_future(self._stop_event.wait())
            try:
                await asyncio.wait({next_job, stopped}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopped.cancel()

            if not next_job.done():
                next_job.cancel()
                break

            try:
                job = next_job.result()
            except JobSpecError as e:
                logger.error("job_document_invalid", error=str(e))
                continue
            if job is None:
                logger.info("job_source_exhausted")
                break
            if not self._accepting:
                logger.info("job_not_started_runner_stopping", job_id=job.job_id)
                break

            runs.append(await self.run_job(job))

        logger.info("runner_stopped", jobs_run=len(runs))
        return runs

    async def shutdown(self) -> None:
        """
        Stop accepting new jobs.

        An in-flight step is not interrupted; the current job runs to its
        normal end and is torn down as usual.
        """
        if not self._accepting:
            return
        logger.info("runner_shutting_down", active_jobs=list(self._active))
        self._accepting = False
        self._stop_event.set()

    async def run_job(self, job: JobSpec) -> JobRun:
        """
        Execute a job through its lifecycle.
        Transitions: IDLE -> RUNNING -> SUCCEEDED/FAILED -> TERMINATED

        Returns:
            The finished JobRun. Step and infrastructure failures are
            reported on it rather than raised.

        Raises:
            RunnerClosedError: after shutdown()
            ValueError: if a job with the same id is already running
            asyncio.CancelledError: re-raised after the sandbox is released
        """
        async with self._state_lock:
            if not self._accepting:
                raise RunnerClosedError(f"Runner is shutting down; job {job.job_id} rejected")
            if job.job_id in self._active:
                raise ValueError(f"Job {job.job_id} is already running")
            run = JobRun(job=job)
            self.jobs[job.job_id] = run
            self._active[job.job_id] = run

        logger.info("job_received", job_id=job.job_id, steps=len(job.steps), executor=self.executor.name)
        try:
            await self._execute(run)
        finally:
            self._active.pop(job.job_id, None)
        return run

    async def _execute(self, run: JobRun) -> None:
        job = run.job
        try:
            sandbox = await self.executor.create_sandbox(job, timeout=self.config.sandbox_create_timeout)
        except asyncio.CancelledError:
            run.error = JobCancelledError(f"Job {job.job_id} cancelled before its sandbox was ready")
            self._finish(run, JobState.FAILED)
            self._transition(run, JobState.TERMINATED)
            raise
        except Exception as e:
            if isinstance(e, InfrastructureError):
                error = e
            else:
                error = self._as_infrastructure_error(f"Sandbox creation failed: {e}", e)
            logger.error("sandbox_creation_failed", job_id=job.job_id, error=str(error))
            run.error = error
            self._finish(run, JobState.FAILED)
            self._transition(run, JobState.TERMINATED)
            return

        self._transition(run, JobState.RUNNING)
        run.started_at = _utcnow()
        try:
            await self._run_steps(run, sandbox)
        finally:
            await self._destroy(run, sandbox)
            self._transition(run, JobState.TERMINATED)

        if run.succeeded:
            logger.info("job_succeeded", job_id=job.job_id, steps=len(run.step_runs))
        else:
            logger.warning(
                "job_failed",
                job_id=job.job_id,
                failed_step=run.failed_step,
                error=str(run.error)
            )

    async def _run_steps(self, run: JobRun, sandbox: Sandbox) -> None:
        job = run.job
        # Every step gets the full job timeout; there is no shared budget
        timeout = job.timeout_seconds

        for step in job.steps:
            logger.info("step_started", job_id=job.job_id, step=step.name)
            started_at = _utcnow()
            try:
                result = await sandbox.run_step(step, timeout=timeout)
            except asyncio.CancelledError:
                error = JobCancelledError(f"Job {job.job_id} cancelled during step {step.name!r}")
                partial = getattr(sandbox, "partial_result", None)
                if partial is not None:
                    result = StepResult.from_error(
                        error,
                        stdout=partial.stdout,
                        stderr=partial.stderr,
                        duration_seconds=partial.duration_seconds
                    )
                else:
                    result = StepResult.from_error(error)
                run.step_runs.append(StepRun(step, result, started_at, _utcnow()))
                run.error = error
                self._finish(run, JobState.FAILED)
                logger.warning("job_cancelled", job_id=job.job_id, step=step.name)
                raise
            except Exception as e:
                # Sandboxes report failures in the result; treat a raise the same way
                result = StepResult.from_error(
                    self._as_infrastructure_error(f"Step {step.name!r} raised: {e}", e)
                )

            run.step_runs.append(StepRun(step, result, started_at, _utcnow()))
            logger.debug("step_output", job_id=job.job_id, step=step.name, stdout=result.stdout, stderr=result.stderr)

            if result.error is not None:
                logger.error("step_infrastructure_error", job_id=job.job_id, step=step.name, error=str(result.error))
                run.error = result.error
                self._finish(run, JobState.FAILED)
                return

            if result.exit_code != 0:
                logger.warning("step_failed", job_id=job.job_id, step=step.name, exit_code=result.exit_code)
                run.error = StepFailure(step.name, result.exit_code, result)
                self._finish(run, JobState.FAILED)
                return

            logger.info("step_succeeded", job_id=job.job_id, step=step.name)

        self._finish(run, JobState.SUCCEEDED)

    async def _destroy(self, run: JobRun, sandbox: Sandbox) -> None:
        """Release the sandbox; failures never change the verdict"""
        try:
            await sandbox.destroy(timeout=self.config.teardown_timeout)
        except TeardownError as e:
            run.teardown_error = e
            logger.warning("sandbox_teardown_failed", job_id=run.job_id, error=str(e))
        except Exception as e:
            run.teardown_error = TeardownError(f"Unexpected teardown error: {e}")
            run.teardown_error.__cause__ = e
            logger.warning("sandbox_teardown_failed", job_id=run.job_id, error=str(e))

    @staticmethod
    def _as_infrastructure_error(message: str, cause: Exception) -> InfrastructureError:
        error = InfrastructureError(message)
        error.__cause__ = cause
        return error

    def _finish(self, run: JobRun, outcome: JobState) -> None:
        if run.outcome is not None:
            return
        run.outcome = outcome
        run.ended_at = _utcnow()
        self._transition(run, outcome)

    def _transition(self, run: JobRun, new_state: JobState) -> None:
        old_state = run.state
        run.state = new_state
        logger.info(
            "job_state_transition",
            job_id=run.job_id,
            from_state=old_state.value,
            to_state=new_state.value
        )

    def get_job(self, job_id: str) -> Optional[JobRun]:
        return self.jobs.get(job_id)

    def get_active_job(self) -> Optional[JobRun]:
        for run in self._active.values():
            return run
        return None
