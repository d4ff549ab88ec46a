"""Job sources: where the runner gets its next JobSpec from."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Union, runtime_checkable

import structlog

from cheeky_runner.jobspec.parser import load_job_spec
from cheeky_runner.models import JobSpec

logger = structlog.get_logger()


@runtime_checkable
class JobSource(Protocol):
    async def next_job(self) -> Optional[JobSpec]:
        """Return the next validated job, or None once the source is exhausted."""
        ...


class StaticJobSource:
    """Hands out a fixed list of jobs in order."""

    def __init__(self, jobs: Iterable[JobSpec]):
        self._jobs: List[JobSpec] = list(jobs)

    async def next_job(self) -> Optional[JobSpec]:
        if not self._jobs:
            return None
        return self._jobs.pop(0)


class FileJobSource:
    """
    Reads one job document per file, in order.

    Files are parsed lazily, when the runner asks for the next job, so a
    broken document only surfaces when its turn comes.
    """

    def __init__(self, paths: Iterable[Union[str, Path]]):
        self._paths: List[Path] = [Path(p) for p in paths]

    async def next_job(self) -> Optional[JobSpec]:
        if not self._paths:
            return None
        path = self._paths.pop(0)
        job = load_job_spec(path)
        logger.info("job_loaded", path=str(path), job_id=job.job_id)
        return job
