"""
Local process executor
Runs steps as host subprocesses in the job workspace. No isolation.
"""

import asyncio
import os
import platform
import signal
import time
from pathlib import Path
from typing import Optional

import structlog

from cheeky_runner.config import RunnerConfig, get_runner_config
from cheeky_runner.errors import InfrastructureError, StepTimeoutError
from cheeky_runner.execution.base import BaseSandbox
from cheeky_runner.models import INFRASTRUCTURE_EXIT_CODE, Capabilities, JobSpec, StepResult, StepSpec

logger = structlog.get_logger()


def exit_code_for(returncode: int) -> int:
    """Shell-style exit status: a process killed by signal N reports 128 + N"""
    if returncode < 0:
        return 128 - returncode
    return returncode


def _retrieve_exception(future: asyncio.Future) -> None:
    # A gather cancelled under wait_for may finish with nobody awaiting it
    if not future.cancelled():
        future.exception()


class LocalSandbox(BaseSandbox):
    """
    Job workspace on the host

    Steps share the workspace directory, so files written by one step are
    visible to the next. The workspace belongs to the caller and is left
    in place on destroy.
    """

    def __init__(self, job: JobSpec, workspace: Path, config: RunnerConfig):
        super().__init__(job)
        self.workspace = workspace
        self.config = config
        self._process: Optional[asyncio.subprocess.Process] = None

    def resolve_workdir(self, workdir: str) -> Path:
        """
        Map a step working directory onto the host

        Paths under the container mount point are rewritten into the
        workspace; relative paths are taken relative to it.
        """
        if not workdir:
            return self.workspace
        mount = self.config.workspace_mount_path
        if workdir == mount:
            return self.workspace
        if workdir.startswith(mount.rstrip("/") + "/"):
            return self.workspace / workdir[len(mount):].lstrip("/")
        path = Path(workdir)
        if not path.is_absolute():
            return self.workspace / path
        return path

    async def run_step(self, step: StepSpec, timeout: Optional[float] = None) -> StepResult:
        """
        Run one step as a subprocess

        Args:
            step: Step to execute
            timeout: Seconds before the process group is killed

        Returns:
            StepResult with captured output
        """
        start_time = time.monotonic()
        self.partial_result = None
        if not step.command:
            return StepResult.from_error(InfrastructureError(f"Step {step.name!r} has no command"))

        env = os.environ.copy()
        env.update(self.job.environment_for(step))
        cwd = self.resolve_workdir(step.workdir)

        logger.info("step_process_started", job_id=self.job.job_id, step=step.name, cwd=str(cwd))

        try:
            process = await asyncio.create_subprocess_exec(
                *step.command,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True  # Own process group for cleanup
            )
        except OSError as e:
            logger.error("step_process_spawn_failed", job_id=self.job.job_id, step=step.name, error=str(e))
            error = InfrastructureError(f"Failed to start step {step.name!r}: {e}")
            error.__cause__ = e
            return StepResult.from_error(error, duration_seconds=time.monotonic() - start_time)

        self._process = process
        stdout_buf = bytearray()
        stderr_buf = bytearray()
        readers = asyncio.gather(
            self._drain(process.stdout, stdout_buf),
            self._drain(process.stderr, stderr_buf),
            process.wait()
        )
        readers.add_done_callback(_retrieve_exception)

        try:
            await asyncio.wait_for(readers, timeout=timeout)

        except asyncio.TimeoutError:
            await self._kill(process)
            logger.warning("step_process_timeout", job_id=self.job.job_id, step=step.name, timeout=timeout)
            return StepResult.from_error(
                StepTimeoutError(f"Step {step.name!r} did not finish within {timeout} seconds"),
                stdout=self._decode(stdout_buf),
                stderr=self._decode(stderr_buf),
                duration_seconds=time.monotonic() - start_time
            )

        except asyncio.CancelledError:
            self.partial_result = StepResult(
                exit_code=INFRASTRUCTURE_EXIT_CODE,
                stdout=self._decode(stdout_buf),
                stderr=self._decode(stderr_buf),
                duration_seconds=time.monotonic() - start_time
            )
            await self._kill(process)
            raise

        finally:
            self._process = None

        duration = time.monotonic() - start_time
        exit_code = exit_code_for(process.returncode)
        logger.info(
            "step_process_completed",
            job_id=self.job.job_id,
            step=step.name,
            exit_code=exit_code,
            duration=round(duration, 3)
        )
        return StepResult(
            exit_code=exit_code,
            stdout=self._decode(stdout_buf),
            stderr=self._decode(stderr_buf),
            duration_seconds=duration
        )

    async def _drain(self, stream: asyncio.StreamReader, buf: bytearray) -> None:
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            room = self.config.max_output_size - len(buf)
            if room > 0:
                buf.extend(chunk[:room])

    @staticmethod
    def _decode(buf: bytearray) -> str:
        return buf.decode("utf-8", errors="replace")

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        # Kill entire process group
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()

    async def _release(self, timeout: Optional[float]) -> None:
        if self._process is not None and self._process.returncode is None:
            await self._kill(self._process)
        logger.info("local_sandbox_released", job_id=self.job.job_id, workspace=str(self.workspace))


class LocalExecutor:
    """Executor that runs steps directly on the host"""

    name = "local"

    def __init__(self, config: Optional[RunnerConfig] = None):
        self.config = config or get_runner_config()

    def capabilities(self) -> Capabilities:
        return Capabilities(
            architecture=platform.machine() or "unknown",
            isolation="none",
            max_cpu=os.cpu_count() or 1,
            max_memory_mb=self.config.max_memory_mb
        )

    async def create_sandbox(self, job: JobSpec, timeout: Optional[float] = None) -> LocalSandbox:
        if not job.steps:
            raise InfrastructureError(f"Job {job.job_id} has no steps")
        workspace = Path(job.workspace).resolve() if job.workspace else None
        if workspace is None or not workspace.is_dir():
            raise InfrastructureError(f"Workspace {job.workspace!r} does not exist")

        logger.info("local_sandbox_created", job_id=job.job_id, workspace=str(workspace))
        return LocalSandbox(job, workspace, self.config)
