"""
Cheeky CI Runner Agent
Wires configuration, executor, job source and job runner together
"""

import asyncio
import logging
import signal
from typing import List, Optional

import structlog
from rich.console import Console
from rich.table import Table

from cheeky_runner.config import RunnerConfig, get_runner_config
from cheeky_runner.execution import DockerExecutor, Executor, JobRun, JobRunner, LocalExecutor
from cheeky_runner.jobspec import FileJobSource, JobSource

logger = structlog.get_logger()
console = Console()


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure structured logging"""
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        )
    )


def build_executor(config: RunnerConfig) -> Executor:
    """Select the sandbox backend named in the configuration"""
    if config.runner_executor == "local":
        return LocalExecutor(config=config)
    return DockerExecutor(config=config)


class RunnerAgent:
    """
    Runner agent that:
    1. Builds the configured executor and reports its capabilities
    2. Pulls jobs from the injected job source
    3. Runs each job to completion
    4. Stops taking work on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        executor: Optional[Executor] = None,
        job_source: Optional[JobSource] = None
    ):
        self.config = config or get_runner_config()
        self.executor = executor or build_executor(self.config)
        self.job_source = job_source or FileJobSource(self.config.job_files)
        self.runner = JobRunner(self.executor, job_source=self.job_source, config=self.config)

    async def start(self) -> List[JobRun]:
        """Run jobs until the source is exhausted or a shutdown is requested"""
        capabilities = self.executor.capabilities()
        logger.info(
            "runner_agent_starting",
            executor=self.executor.name,
            architecture=capabilities.architecture,
            isolation=capabilities.isolation,
            max_cpu=capabilities.max_cpu,
            max_memory_mb=capabilities.max_memory_mb
        )

        runs = await self.runner.run()
        for run in runs:
            self.print_summary(run)
        return runs

    async def stop(self) -> None:
        """Stop accepting jobs; the in-flight job finishes normally"""
        logger.info("runner_agent_stopping")
        await self.runner.shutdown()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            asyncio.ensure_future(self.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

    @staticmethod
    def print_summary(run: JobRun) -> None:
        colour = "green" if run.succeeded else "red"
        outcome = run.outcome.value if run.outcome else "unknown"

        table = Table(
            title=f"Job {run.job_id}: [{colour}]{outcome}[/{colour}]",
            show_header=True,
            header_style="bold magenta"
        )
        table.add_column("Step", style="cyan")
        table.add_column("Exit", justify="right")
        table.add_column("Duration (s)", justify="right")
        table.add_column("Error")

        for step_run in run.step_runs:
            result = step_run.result
            table.add_row(
                step_run.name,
                str(result.exit_code),
                f"{result.duration_seconds:.2f}",
                str(result.error) if result.error else ""
            )

        console.print(table)
        if run.error and not run.step_runs:
            console.print(f"[red]{run.error}[/red]")
        if run.teardown_error:
            console.print(f"[yellow]Teardown: {run.teardown_error}[/yellow]")


async def main():
    """Main entry point for the runner agent"""
    config = get_runner_config()
    configure_logging(config.log_level, config.log_format)

    agent = RunnerAgent(config=config)
    agent.install_signal_handlers()

    runs = await agent.start()
    return 0 if all(run.succeeded for run in runs) else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
