"""Prefect entry point for a phaseflow run.

The scheduler does the work; wrapping it in a @flow gives each run a
flow-run record (and the reconciliation step a task-run record) when a
Prefect server is available. Retries stay in the phase runner, so the
task has none.
"""

import logging

from prefect import flow, task
from prefect.cache_policies import NO_CACHE
from pydantic import BaseModel

from phaseflow.lib.types import Phase
from phaseflow.runner.context import ExecutionMode, RunOptions
from phaseflow.workflow.scheduler import RunSummary, Scheduler

logger = logging.getLogger(__name__)


class RunRequest(BaseModel):
    """Input of the phaseflow_run flow."""
    issues: list[int]
    phases: list[Phase] | None = None
    quality_loop: bool | None = None
    max_iterations: int | None = None
    mode: ExecutionMode = ExecutionMode.PARALLEL
    batches: list[list[int]] | None = None
    base_branch: str | None = None
    resume: bool = False
    force: bool = False
    dry_run: bool = False
    create_pr: bool = True
    rebase: bool = True
    retry: bool = True
    review_gate: bool = False
    timeout: int | None = None
    max_workers: int = 4

    def to_options(self) -> RunOptions:
        return RunOptions(**self.model_dump(exclude={"issues"}))


@task(name="reconcile", retries=0, cache_policy=NO_CACHE,
      description="Mark issues whose PR merged upstream as merged")
def task_reconcile(scheduler: Scheduler, issues: list[int]) -> list[int]:
    return scheduler.reconcile(issues)


@flow(name="phaseflow_run", validate_parameters=False)
def phaseflow_run(scheduler: Scheduler, request: RunRequest) -> RunSummary:
    """Reconcile, then run every requested issue through its pipeline."""
    options = request.to_options()
    reconciled = []
    if not options.dry_run:
        reconciled = task_reconcile(scheduler, request.issues)
    summary = scheduler.run(request.issues, options, reconcile=False)
    summary.reconciled = reconciled
    return summary


def run(scheduler: Scheduler, request: RunRequest, use_prefect: bool = True) -> RunSummary:
    """Run with or without the Prefect flow wrapper."""
    if use_prefect:
        return phaseflow_run(scheduler, request)
    logger.debug("Running without Prefect")
    return scheduler.run(request.issues, request.to_options())
