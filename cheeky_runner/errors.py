"""
Runner error taxonomy
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from cheeky_runner.models import StepResult


class RunnerError(Exception):
    """Base class for all runner errors"""


class InfrastructureError(RunnerError):
    """The sandbox could not be provisioned or operated, or a deadline expired"""


class StepTimeoutError(InfrastructureError):
    """A step did not finish before its deadline"""


class JobCancelledError(InfrastructureError):
    """The job run was cancelled while a step was in flight"""


class TeardownError(RunnerError):
    """Sandbox resources could not be fully released"""


class RunnerClosedError(RunnerError):
    """The runner has been shut down and accepts no further jobs"""


class JobSpecError(ValueError):
    """A job document could not be decoded into a valid job spec"""


class StepFailure(RunnerError):
    """
    A step executed and exited nonzero.

    This is an expected outcome, not a defect: the job fails and the
    remaining steps are skipped.
    """

    def __init__(self, step_name: str, exit_code: int, result: Optional["StepResult"] = None):
        super().__init__(f"Step {step_name!r} failed with exit code {exit_code}")
        self.step_name = step_name
        self.exit_code = exit_code
        self.result = result
