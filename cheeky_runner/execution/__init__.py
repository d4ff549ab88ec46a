"""
Job execution engine for Cheeky CI
Executor/Sandbox backends and the job runner that drives them
"""

from cheeky_runner.execution.base import BaseSandbox, Executor, Sandbox
from cheeky_runner.execution.docker_backend import DockerExecutor, DockerSandbox
from cheeky_runner.execution.job_runner import JobRun, JobRunner, JobState, StepRun
from cheeky_runner.execution.local import LocalExecutor, LocalSandbox

__all__ = [
    "BaseSandbox",
    "DockerExecutor",
    "DockerSandbox",
    "Executor",
    "JobRun",
    "JobRunner",
    "JobState",
    "LocalExecutor",
    "LocalSandbox",
    "Sandbox",
    "StepRun",
]
