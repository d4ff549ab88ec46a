"""Executor / Sandbox capability contracts."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from cheeky_runner.models import Capabilities, JobSpec, StepResult, StepSpec


@runtime_checkable
class Sandbox(Protocol):
    """
    One isolated execution context bound to a single job run.

    run_step never raises for step, infrastructure or deadline failures;
    those are reported in the returned StepResult. Task cancellation
    (asyncio.CancelledError) is propagated to the caller; a sandbox may
    leave the output captured so far in its `partial_result` attribute.

    destroy releases the underlying resources and raises TeardownError
    when it cannot. Calling it is the owner's responsibility.
    """

    async def run_step(self, step: StepSpec, timeout: Optional[float] = None) -> StepResult:
        ...

    async def destroy(self, timeout: Optional[float] = None) -> None:
        ...


@runtime_checkable
class Executor(Protocol):
    """
    Factory for Sandboxes.

    Implementations must be safe to share between concurrent job runs.
    """

    name: str

    def capabilities(self) -> Capabilities:
        ...

    async def create_sandbox(self, job: JobSpec, timeout: Optional[float] = None) -> Sandbox:
        """
        Provision and start a sandbox for the job.

        Raises:
            InfrastructureError: if nothing usable could be provisioned
        """
        ...


class BaseSandbox:
    """
    Shared sandbox plumbing: single-shot destroy and scoped use.

        async with await executor.create_sandbox(job) as sandbox:
            result = await sandbox.run_step(step)
    """

    def __init__(self, job: JobSpec):
        self.job = job
        self._destroyed = False
        # Output captured by a run_step that was cancelled before it could return
        self.partial_result: Optional[StepResult] = None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def run_step(self, step: StepSpec, timeout: Optional[float] = None) -> StepResult:
        raise NotImplementedError

    async def destroy(self, timeout: Optional[float] = None) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        await self._release(timeout)

    async def _release(self, timeout: Optional[float]) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> "BaseSandbox":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()
