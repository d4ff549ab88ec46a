"""
Container-backed executor
One long-lived container per job; every step is a separate exec session
inside it, so filesystem changes made by a step are visible to later steps.
"""

import asyncio
import os
import platform
import re
import threading
import time
from typing import Dict, List, Optional, Set

import docker  # type: ignore
from docker.errors import DockerException, ImageNotFound, NotFound  # type: ignore
import structlog

from cheeky_runner.config import RunnerConfig, get_runner_config
from cheeky_runner.errors import InfrastructureError, StepTimeoutError, TeardownError
from cheeky_runner.execution.base import BaseSandbox
from cheeky_runner.execution.image_ref import ImageReference, parse_image
from cheeky_runner.models import INFRASTRUCTURE_EXIT_CODE, Capabilities, JobSpec, StepResult, StepSpec

logger = structlog.get_logger()

# Errors the Docker SDK surfaces: its own hierarchy plus requests' (an OSError)
DOCKER_ERRORS = (DockerException, OSError)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")

# exec_inspect polling once the output stream has closed; without a step
# deadline the exit code must show up within the grace period
_INSPECT_INTERVAL = 0.05
_INSPECT_GRACE = 30.0


def env_list(env: Dict[str, str]) -> List[str]:
    """Engine-style KEY=VALUE list"""
    return [f"{key}={value}" for key, value in env.items()]


def container_name_for(prefix: str, job_id: str) -> str:
    name = _INVALID_NAME_CHARS.sub("-", f"{prefix}{job_id}")
    if not name[0].isalnum():
        name = f"j{name}"
    return name


class _ExecCapture:
    """
    Output buffers filled by the exec reader thread.

    Read from the event loop when a deadline fires, so partial output
    survives a timeout.
    """

    def __init__(self, max_output_size: int):
        self.max_output_size = max_output_size
        self._lock = threading.Lock()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def feed(self, stdout: Optional[bytes], stderr: Optional[bytes]) -> None:
        with self._lock:
            if stdout:
                room = self.max_output_size - len(self._stdout)
                if room > 0:
                    self._stdout.extend(stdout[:room])
            if stderr:
                room = self.max_output_size - len(self._stderr)
                if room > 0:
                    self._stderr.extend(stderr[:room])

    @property
    def stdout(self) -> str:
        with self._lock:
            return self._stdout.decode("utf-8", errors="replace")

    @property
    def stderr(self) -> str:
        with self._lock:
            return self._stderr.decode("utf-8", errors="replace")


class DockerSandbox(BaseSandbox):
    """A started container owned by exactly one job run"""

    def __init__(
        self,
        job: JobSpec,
        client: "docker.DockerClient",
        container_id: str,
        config: RunnerConfig
    ):
        super().__init__(job)
        self.client = client
        self.container_id = container_id
        self.config = config

    async def run_step(self, step: StepSpec, timeout: Optional[float] = None) -> StepResult:
        """
        Run one step as an exec session in the job container

        Args:
            step: Step to execute
            timeout: Seconds before the step is abandoned (None: no deadline)

        Returns:
            StepResult; infrastructure problems and deadline expiry are
            reported through StepResult.error with exit code -1
        """
        capture = _ExecCapture(self.config.max_output_size)
        start_time = time.monotonic()
        deadline = start_time + timeout if timeout is not None else None
        self.partial_result = None
        logger.info(
            "step_exec_started",
            job_id=self.job.job_id,
            step=step.name,
            container_id=self.container_id[:12],
            timeout=timeout
        )

        try:
            exit_code = await asyncio.wait_for(
                asyncio.to_thread(self._exec, step, capture, deadline),
                timeout=timeout
            )

        except asyncio.CancelledError:
            # The exec keeps running in the container until destroy stops it
            self.partial_result = StepResult(
                exit_code=INFRASTRUCTURE_EXIT_CODE,
                stdout=capture.stdout,
                stderr=capture.stderr,
                duration_seconds=time.monotonic() - start_time
            )
            raise

        except asyncio.TimeoutError:
            logger.warning("step_exec_timeout", job_id=self.job.job_id, step=step.name, timeout=timeout)
            return StepResult.from_error(
                StepTimeoutError(f"Step {step.name!r} did not finish within {timeout} seconds"),
                stdout=capture.stdout,
                stderr=capture.stderr,
                duration_seconds=time.monotonic() - start_time
            )

        except InfrastructureError as e:
            logger.error("step_exec_error", job_id=self.job.job_id, step=step.name, error=str(e))
            return StepResult.from_error(
                e,
                stdout=capture.stdout,
                stderr=capture.stderr,
                duration_seconds=time.monotonic() - start_time
            )

        except Exception as e:
            logger.error("step_exec_unexpected_error", job_id=self.job.job_id, step=step.name, error=str(e))
            error = InfrastructureError(f"Step {step.name!r} could not be executed: {e}")
            error.__cause__ = e
            return StepResult.from_error(
                error,
                stdout=capture.stdout,
                stderr=capture.stderr,
                duration_seconds=time.monotonic() - start_time
            )

        duration = time.monotonic() - start_time
        logger.info(
            "step_exec_completed",
            job_id=self.job.job_id,
            step=step.name,
            exit_code=exit_code,
            duration=round(duration, 3)
        )
        return StepResult(
            exit_code=exit_code,
            stdout=capture.stdout,
            stderr=capture.stderr,
            duration_seconds=duration
        )

    def _exec(self, step: StepSpec, capture: _ExecCapture, deadline: Optional[float] = None) -> int:
        """Create, attach to and inspect one exec session (blocking)"""
        if not step.command:
            raise InfrastructureError(f"Step {step.name!r} has no command")

        api = self.client.api
        try:
            exec_id = api.exec_create(
                self.container_id,
                list(step.command),
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                environment=env_list(self.job.environment_for(step)),
                workdir=step.workdir or self.config.workspace_mount_path
            )["Id"]
        except DOCKER_ERRORS as e:
            raise InfrastructureError(f"Failed to create exec session for step {step.name!r}: {e}") from e

        # The attach stream is multiplexed; demux splits it into stdout/stderr
        try:
            for stdout, stderr in api.exec_start(exec_id, stream=True, demux=True):
                capture.feed(stdout, stderr)
        except DOCKER_ERRORS as e:
            raise InfrastructureError(f"Failed to attach to step {step.name!r}: {e}") from e

        # The stream does not carry the exit code
        if deadline is None:
            deadline = time.monotonic() + _INSPECT_GRACE
        while True:
            try:
                inspect = api.exec_inspect(exec_id)
            except DOCKER_ERRORS as e:
                raise InfrastructureError(f"Failed to inspect step {step.name!r}: {e}") from e
            if not inspect.get("Running") and inspect.get("ExitCode") is not None:
                return int(inspect["ExitCode"])
            if time.monotonic() >= deadline:
                break
            time.sleep(_INSPECT_INTERVAL)

        raise InfrastructureError(f"Exit code for step {step.name!r} was never reported")

    async def _release(self, timeout: Optional[float]) -> None:
        logger.info("sandbox_destroying", job_id=self.job.job_id, container_id=self.container_id[:12])
        try:
            await asyncio.wait_for(asyncio.to_thread(self._teardown), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TeardownError(
                f"Teardown of container {self.container_id[:12]} timed out after {timeout} seconds"
            ) from e
        logger.info("sandbox_destroyed", job_id=self.job.job_id, container_id=self.container_id[:12])

    def _teardown(self) -> None:
        """Stop, then force-remove the container (blocking)"""
        try:
            container = self.client.containers.get(self.container_id)
        except NotFound:
            logger.info("sandbox_already_removed", container_id=self.container_id[:12])
            return
        except DOCKER_ERRORS as e:
            raise TeardownError(f"Failed to look up container {self.container_id[:12]}: {e}") from e

        try:
            container.stop(timeout=self.config.stop_timeout)
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            # Force removal below still kills it
            logger.warning("sandbox_stop_failed", container_id=self.container_id[:12], error=str(e))

        try:
            container.remove(force=True)
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            raise TeardownError(f"Failed to remove container {self.container_id[:12]}: {e}") from e


class DockerExecutor:
    """
    Executor backed by the Docker Engine API

    Pulls the first step's image, then creates and starts one container per
    job with the workspace bind-mounted read-write.
    """

    name = "docker"

    def __init__(
        self,
        client: Optional["docker.DockerClient"] = None,
        config: Optional[RunnerConfig] = None
    ):
        """
        Initialize executor

        Args:
            client: Docker client (default: created lazily from the environment)
            config: Runner configuration (default: global config)
        """
        self.config = config or get_runner_config()
        self._client = client
        self._client_lock = threading.Lock()
        self._cleanup_tasks: Set[asyncio.Future] = set()

    def _get_client(self) -> "docker.DockerClient":
        """Get or create Docker client."""
        with self._client_lock:
            if self._client is None:
                if self.config.docker_base_url:
                    self._client = docker.DockerClient(
                        base_url=self.config.docker_base_url,
                        timeout=self.config.docker_api_timeout
                    )
                else:
                    self._client = docker.from_env(timeout=self.config.docker_api_timeout)
            return self._client

    def capabilities(self) -> Capabilities:
        return Capabilities(
            architecture=platform.machine() or "unknown",
            isolation="container",
            max_cpu=os.cpu_count() or 1,
            max_memory_mb=self.config.max_memory_mb
        )

    async def create_sandbox(self, job: JobSpec, timeout: Optional[float] = None) -> DockerSandbox:
        """
        Pull the image, then create and start the job container

        Args:
            job: Job to provision for; its first step selects the image
            timeout: Seconds allowed for the whole provisioning sequence

        Returns:
            Started DockerSandbox; the caller must destroy it

        Raises:
            InfrastructureError: on invalid input, engine errors or timeout
        """
        if not job.steps:
            raise InfrastructureError(f"Job {job.job_id} has no steps")
        if not job.workspace or not os.path.isdir(job.workspace):
            raise InfrastructureError(f"Workspace {job.workspace!r} does not exist")

        image = parse_image(job.steps[0].image)
        container_name = container_name_for(self.config.container_name_prefix, job.job_id)
        logger.info("sandbox_creating", job_id=job.job_id, image=str(image), container_name=container_name)

        try:
            container_id = await asyncio.wait_for(
                self._provision(job, image, container_name),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise InfrastructureError(
                f"Sandbox for job {job.job_id} was not ready within {timeout} seconds"
            ) from e

        logger.info("sandbox_created", job_id=job.job_id, container_id=container_id[:12])
        return DockerSandbox(job, self._get_client(), container_id, self.config)

    async def _provision(self, job: JobSpec, image: ImageReference, container_name: str) -> str:
        try:
            client = await asyncio.to_thread(self._get_client)
        except DOCKER_ERRORS as e:
            raise InfrastructureError(f"Cannot connect to the Docker daemon: {e}") from e

        await asyncio.to_thread(self._pull, client, image)

        # Once the engine has been asked to create the container, let the
        # call finish so an abandoned container can still be removed.
        create_task = asyncio.ensure_future(
            asyncio.to_thread(self._create_and_start, client, job, image, container_name)
        )
        try:
            return await asyncio.shield(create_task)
        except asyncio.CancelledError:
            # Removed in the background once the engine call returns
            cleanup = asyncio.ensure_future(self._discard_abandoned(client, create_task, job))
            self._cleanup_tasks.add(cleanup)
            cleanup.add_done_callback(self._cleanup_tasks.discard)
            raise

    def _pull(self, client: "docker.DockerClient", image: ImageReference) -> None:
        repository, tag = image.pull_args()
        logger.info("image_pulling", image=str(image))
        try:
            client.images.pull(repository, tag=tag)
        except ImageNotFound as e:
            raise InfrastructureError(f"Image {image} not found") from e
        except DOCKER_ERRORS as e:
            raise InfrastructureError(f"Failed to pull image {image}: {e}") from e
        logger.info("image_pulled", image=str(image))

    def _create_and_start(
        self,
        client: "docker.DockerClient",
        job: JobSpec,
        image: ImageReference,
        container_name: str
    ) -> str:
        mount_path = self.config.workspace_mount_path
        try:
            container = client.containers.create(
                image=str(image),
                command=list(self.config.keepalive_command),
                name=container_name,
                environment=env_list(job.env),
                working_dir=mount_path,
                volumes={
                    os.path.abspath(job.workspace): {"bind": mount_path, "mode": "rw"}
                },
                labels={
                    "cheeky-ci.runner": "true",
                    "cheeky-ci.job-id": job.job_id,
                },
                init=True,
                tty=False,
                detach=True
            )
        except DOCKER_ERRORS as e:
            raise InfrastructureError(f"Failed to create container {container_name}: {e}") from e

        try:
            container.start()
        except DOCKER_ERRORS as e:
            try:
                container.remove(force=True)
            except DOCKER_ERRORS as cleanup_error:
                logger.warning(
                    "container_cleanup_failed",
                    container_id=container.id[:12],
                    error=str(cleanup_error)
                )
            raise InfrastructureError(f"Failed to start container {container_name}: {e}") from e

        return container.id

    async def _discard_abandoned(self, client: "docker.DockerClient", create_task: asyncio.Future, job: JobSpec) -> None:
        """Remove a container whose creation outlived a cancelled create_sandbox"""
        try:
            container_id = await create_task
        except InfrastructureError as e:
            logger.info("sandbox_creation_abandoned", job_id=job.job_id, error=str(e))
            return

        logger.warning("sandbox_creation_cancelled", job_id=job.job_id, container_id=container_id[:12])
        try:
            await asyncio.to_thread(client.api.remove_container, container_id, force=True)
        except DOCKER_ERRORS as e:
            logger.warning("container_cleanup_failed", container_id=container_id[:12], error=str(e))
