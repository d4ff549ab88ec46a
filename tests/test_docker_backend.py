"""
Unit tests for the Docker executor against a mocked Docker client
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from cheeky_runner.errors import InfrastructureError, StepTimeoutError, TeardownError
from cheeky_runner.execution.docker_backend import DockerExecutor, DockerSandbox, container_name_for
from tests.factories import JobSpecFactory, StepSpecFactory


@pytest.fixture
def docker_client():
    client = MagicMock()
    container = MagicMock()
    container.id = "c0ffee1234567890"
    client.containers.create.return_value = container
    client.containers.get.return_value = container
    return client


@pytest.fixture
def executor(docker_client, runner_config):
    return DockerExecutor(client=docker_client, config=runner_config)


@pytest.fixture
def job(workspace):
    return JobSpecFactory(
        job_id="job-1",
        workspace=str(workspace),
        env={"CI": "true"},
        steps=[
            StepSpecFactory(name="checkout", image="alpine:3.19", command=("sh", "-c", "echo hi > hi.txt")),
            StepSpecFactory(name="build", image="golang:1.22", command=("cat", "hi.txt"), env={"MODE": "ci"}),
        ]
    )


@pytest.fixture
def sandbox(docker_client, runner_config, job):
    return DockerSandbox(job, docker_client, "c0ffee1234567890", runner_config)


def exec_api(client, chunks, exit_code=0):
    client.api.exec_create.return_value = {"Id": "exec-1"}
    client.api.exec_start.return_value = iter(chunks)
    client.api.exec_inspect.return_value = {"Running": False, "ExitCode": exit_code}


class TestCreateSandbox:

    def test_capabilities(self, executor):
        caps = executor.capabilities()
        assert caps.isolation == "container"
        assert caps.max_cpu >= 1
        assert caps.max_memory_mb == 0

    @pytest.mark.asyncio
    async def test_pulls_first_step_image_and_starts_container(self, executor, docker_client, job, workspace):
        sandbox = await executor.create_sandbox(job)

        docker_client.images.pull.assert_called_once_with("alpine", tag="3.19")
        kwargs = docker_client.containers.create.call_args.kwargs
        assert kwargs["image"] == "alpine:3.19"
        assert kwargs["name"] == "job-job-1"
        assert kwargs["command"] == ["sleep", "infinity"]
        assert kwargs["environment"] == ["CI=true"]
        assert kwargs["working_dir"] == "/workspace"
        assert kwargs["volumes"] == {str(workspace): {"bind": "/workspace", "mode": "rw"}}
        docker_client.containers.create.return_value.start.assert_called_once()
        assert isinstance(sandbox, DockerSandbox)
        assert sandbox.container_id == "c0ffee1234567890"

    @pytest.mark.asyncio
    async def test_pull_failure_is_infrastructure_error(self, executor, docker_client, job):
        docker_client.images.pull.side_effect = ImageNotFound("no such image")

        with pytest.raises(InfrastructureError):
            await executor.create_sandbox(job)
        docker_client.containers.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_failure_is_infrastructure_error(self, executor, docker_client, job):
        docker_client.containers.create.side_effect = APIError("Conflict. The container name is already in use")

        with pytest.raises(InfrastructureError):
            await executor.create_sandbox(job)

    @pytest.mark.asyncio
    async def test_start_failure_removes_container(self, executor, docker_client, job):
        container = docker_client.containers.create.return_value
        container.start.side_effect = APIError("bind mount failed")

        with pytest.raises(InfrastructureError):
            await executor.create_sandbox(job)
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_missing_workspace(self, executor, docker_client, tmp_path):
        job = JobSpecFactory(workspace=str(tmp_path / "missing"))

        with pytest.raises(InfrastructureError):
            await executor.create_sandbox(job)
        docker_client.images.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_step_needs_an_image(self, executor, docker_client, workspace):
        job = JobSpecFactory(workspace=str(workspace), steps=[StepSpecFactory(image="")])

        with pytest.raises(InfrastructureError):
            await executor.create_sandbox(job)

    @pytest.mark.asyncio
    async def test_slow_pull_times_out(self, executor, docker_client, job):
        docker_client.images.pull.side_effect = lambda *args, **kwargs: time.sleep(1)

        with pytest.raises(InfrastructureError, match="not ready"):
            await executor.create_sandbox(job, timeout=0.1)
        docker_client.containers.create.assert_not_called()

    def test_container_name_is_sanitised(self):
        assert container_name_for("job-", "build #42/main") == "job-build--42-main"
        assert container_name_for("", "_x") == "j_x"


class TestRunStep:

    @pytest.mark.asyncio
    async def test_demultiplexes_output_and_inspects_exit_code(self, sandbox, docker_client, job):
        exec_api(docker_client, [(b"hel", None), (b"lo\n", b"warn\n"), (None, b"more\n")], exit_code=3)

        result = await sandbox.run_step(job.steps[1], timeout=5)

        assert result.exit_code == 3
        assert result.stdout == "hello\n"
        assert result.stderr == "warn\nmore\n"
        assert result.error is None
        docker_client.api.exec_start.assert_called_once_with("exec-1", stream=True, demux=True)
        docker_client.api.exec_inspect.assert_called_with("exec-1")

    @pytest.mark.asyncio
    async def test_exec_gets_command_env_and_workdir(self, sandbox, docker_client, job):
        exec_api(docker_client, [])

        await sandbox.run_step(job.steps[1], timeout=5)

        args, kwargs = docker_client.api.exec_create.call_args
        assert args == ("c0ffee1234567890", ["cat", "hi.txt"])
        assert sorted(kwargs["environment"]) == ["CI=true", "MODE=ci"]
        assert kwargs["workdir"] == "/workspace"

    @pytest.mark.asyncio
    async def test_exec_create_failure(self, sandbox, docker_client, job):
        docker_client.api.exec_create.side_effect = APIError("container is not running")

        result = await sandbox.run_step(job.steps[0], timeout=5)

        assert result.exit_code == -1
        assert isinstance(result.error, InfrastructureError)
        docker_client.api.exec_start.assert_not_called()

    @pytest.mark.asyncio
    async def test_inspect_failure_keeps_output(self, sandbox, docker_client, job):
        exec_api(docker_client, [(b"partial", None)])
        docker_client.api.exec_inspect.side_effect = APIError("daemon went away")

        result = await sandbox.run_step(job.steps[0], timeout=5)

        assert result.exit_code == -1
        assert isinstance(result.error, InfrastructureError)
        assert result.stdout == "partial"

    @pytest.mark.asyncio
    async def test_deadline_returns_partial_output(self, sandbox, docker_client, job):
        release = threading.Event()

        def stream():
            yield (b"partial", None)
            release.wait(5)

        docker_client.api.exec_create.return_value = {"Id": "exec-1"}
        docker_client.api.exec_start.return_value = stream()
        docker_client.api.exec_inspect.return_value = {"Running": False, "ExitCode": 0}

        try:
            started = time.monotonic()
            result = await sandbox.run_step(job.steps[0], timeout=0.2)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 2
        assert result.exit_code == -1
        assert isinstance(result.error, StepTimeoutError)
        assert result.stdout == "partial"

    @pytest.mark.asyncio
    async def test_output_is_capped(self, sandbox, docker_client, job, runner_config):
        big = b"x" * (runner_config.max_output_size + 100)
        exec_api(docker_client, [(big, None)])

        result = await sandbox.run_step(job.steps[0], timeout=5)

        assert len(result.stdout) == runner_config.max_output_size


class TestDestroy:

    @pytest.mark.asyncio
    async def test_stops_then_force_removes(self, sandbox, docker_client, runner_config):
        container = docker_client.containers.get.return_value

        await sandbox.destroy()

        docker_client.containers.get.assert_called_once_with("c0ffee1234567890")
        container.stop.assert_called_once_with(timeout=runner_config.stop_timeout)
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_second_destroy_is_a_no_op(self, sandbox, docker_client):
        await sandbox.destroy()
        await sandbox.destroy()

        docker_client.containers.get.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_failure_still_removes(self, sandbox, docker_client):
        container = docker_client.containers.get.return_value
        container.stop.side_effect = APIError("stop failed")

        await sandbox.destroy()

        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_remove_failure_is_teardown_error(self, sandbox, docker_client):
        container = docker_client.containers.get.return_value
        container.remove.side_effect = APIError("device busy")

        with pytest.raises(TeardownError):
            await sandbox.destroy()

    @pytest.mark.asyncio
    async def test_already_gone_is_not_an_error(self, sandbox, docker_client):
        docker_client.containers.get.side_effect = NotFound("no such container")

        await sandbox.destroy()

        assert sandbox.destroyed is True


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


def blocking_create(docker_client):
    """Make containers.create block until the returned release event is set"""
    entered = threading.Event()
    release = threading.Event()
    container = docker_client.containers.create.return_value

    def create(**kwargs):
        entered.set()
        release.wait(5)
        return container

    docker_client.containers.create.side_effect = create
    return entered, release


class TestAbandonedCreation:

    @pytest.mark.asyncio
    async def test_timeout_during_create_removes_container(self, executor, docker_client, job):
        entered, release = blocking_create(docker_client)

        try:
            started = time.monotonic()
            with pytest.raises(InfrastructureError, match="not ready"):
                await executor.create_sandbox(job, timeout=0.3)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 2
        assert entered.is_set()
        await wait_until(lambda: docker_client.api.remove_container.called)
        docker_client.api.remove_container.assert_called_once_with("c0ffee1234567890", force=True)

    @pytest.mark.asyncio
    async def test_cancel_during_create_removes_container(self, executor, docker_client, job):
        entered, release = blocking_create(docker_client)

        task = asyncio.create_task(executor.create_sandbox(job))
        try:
            assert await asyncio.to_thread(entered.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        await wait_until(lambda: docker_client.api.remove_container.called)
        docker_client.api.remove_container.assert_called_once_with("c0ffee1234567890", force=True)

    @pytest.mark.asyncio
    async def test_failed_abandoned_create_needs_no_removal(self, executor, docker_client, job):
        entered, release = blocking_create(docker_client)
        container = docker_client.containers.create.return_value
        container.start.side_effect = APIError("bind mount failed")

        task = asyncio.create_task(executor.create_sandbox(job))
        try:
            assert await asyncio.to_thread(entered.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        await wait_until(lambda: container.remove.called)
        await asyncio.sleep(0.05)
        docker_client.api.remove_container.assert_not_called()


class TestStepCancellation:

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_output(self, sandbox, docker_client, job):
        streaming = threading.Event()
        release = threading.Event()

        def stream():
            yield (b"partial", b"oops")
            streaming.set()
            release.wait(5)

        docker_client.api.exec_create.return_value = {"Id": "exec-1"}
        docker_client.api.exec_start.return_value = stream()
        docker_client.api.exec_inspect.return_value = {"Running": False, "ExitCode": 0}

        task = asyncio.create_task(sandbox.run_step(job.steps[0], timeout=10))
        try:
            assert await asyncio.to_thread(streaming.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        assert sandbox.partial_result.stdout == "partial"
        assert sandbox.partial_result.stderr == "oops"

    @pytest.mark.asyncio
    async def test_slow_exit_code_within_deadline_is_not_an_error(self, sandbox, docker_client, job):
        exec_api(docker_client, [(b"done", None)])
        docker_client.api.exec_inspect.side_effect = (
            [{"Running": True, "ExitCode": None}] * 25 + [{"Running": False, "ExitCode": 0}]
        )

        result = await sandbox.run_step(job.steps[0], timeout=10)

        assert result.error is None
        assert result.exit_code == 0
        assert docker_client.api.exec_inspect.call_count == 26
