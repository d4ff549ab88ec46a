"""
Cheeky CI Runner Core Data Models
Job/step descriptions consumed by the runner and the results it produces
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cheeky_runner.errors import InfrastructureError

# Exit code reported when a step could not be run or observed at all
INFRASTRUCTURE_EXIT_CODE = -1

DEFAULT_JOB_TIMEOUT = timedelta(hours=1)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> Optional[timedelta]:
    """
    Parse a Go-style duration string such as "90s", "5m" or "1h30m".

    Returns None when the string is not in that form so other
    formats (ISO 8601, plain seconds) can be tried.
    """
    text = value.strip()
    if not text:
        return None
    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            return None
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        return None
    return timedelta(seconds=seconds)


def _stringify_env(v):
    """YAML scalars (true, 1, 2.5) become their string form; null becomes empty"""
    if v is None:
        return {}
    if not isinstance(v, dict):
        return v
    out = {}
    for key, value in v.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif value is None:
            value = ""
        elif isinstance(value, (int, float)):
            value = str(value)
        out[str(key)] = value
    return out


class StepSpec(BaseModel):
    """One command executed inside the job's sandbox"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    image: str = ""
    command: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)
    workdir: str = ""

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v):
        return _stringify_env(v)


class JobSpec(BaseModel):
    """Immutable description of one job run"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    job_id: str = Field(min_length=1)
    workspace: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    steps: Tuple[StepSpec, ...] = Field(min_length=1)
    timeout: timedelta = DEFAULT_JOB_TIMEOUT

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v):
        return _stringify_env(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_go_duration(cls, v):
        if isinstance(v, str):
            parsed = parse_duration(v)
            if parsed is not None:
                return parsed
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: timedelta) -> timedelta:
        if v.total_seconds() <= 0:
            raise ValueError("timeout must be positive")
        return v

    @property
    def timeout_seconds(self) -> float:
        return self.timeout.total_seconds()

    def environment_for(self, step: StepSpec) -> Dict[str, str]:
        """Job environment with the step's overrides applied on top"""
        merged = dict(self.env)
        merged.update(step.env)
        return merged


@dataclass
class StepResult:
    """Result of running one step in a sandbox"""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error: Optional[InfrastructureError] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None

    @property
    def infrastructure_failure(self) -> bool:
        return self.error is not None

    @classmethod
    def from_error(
        cls,
        error: InfrastructureError,
        stdout: str = "",
        stderr: str = "",
        duration_seconds: float = 0.0
    ) -> "StepResult":
        """Build a result for a step that could not be run or observed"""
        return cls(
            exit_code=INFRASTRUCTURE_EXIT_CODE,
            stdout=stdout,
            stderr=stderr,
            error=error,
            duration_seconds=duration_seconds
        )


@dataclass(frozen=True)
class Capabilities:
    """What an executor offers; metadata for an external scheduler"""
    architecture: str
    isolation: str  # "container", "vm", "none"
    max_cpu: int
    max_memory_mb: int  # 0 = unknown / unlimited
