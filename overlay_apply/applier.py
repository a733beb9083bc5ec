"""Executes a plan against a cluster endpoint.

Steps are issued in plan order and `Noop` steps are never sent to the
cluster. The applier returns an `ApplyResult` with the outcome of every step
and the `AppliedState` that reflects what the cluster now holds:

- When every step succeeds the state is a snapshot of the plan's manifest
  set with the next generation.
- With the `stop-on-first-error` policy the first failure stops the apply,
  later steps are not attempted and the previous state is returned unchanged.
- With the `best-effort` policy every step whose dependencies succeeded is
  issued, and the previous state is updated with only the steps that
  succeeded so that a retry plans exactly what is left.
- A cancelled apply returns the previous state unchanged.

Cancellation is only observed between steps. A step that was issued is always
awaited so the cluster is never left with an unknown outcome. Cancelling the
task running `apply` is reported the same way as the cancel event: the result
is marked cancelled and lists the steps that were applied.

This example applies a plan and persists the new state:
```python
from overlay_apply.applier import Applier

result = await Applier(cluster).apply(plan, state)
await store.save(result.state)
result.raise_for_status()
```
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum
import logging
from typing import Any

from .cluster import ClusterEndpoint
from .config import ApplierConfig, ApplyPolicy
from .context import trace_context
from .exceptions import (
    ApplyCancelled,
    ApplyError,
    ApplyFailure,
    OverlayException,
)
from .manifest import ResourceDocument, ResourceId
from .plan import Action, Plan, PlanStep, normalize
from .state import AppliedState

__all__ = [
    "Applier",
    "ApplyResult",
    "StepOutcome",
    "StepResult",
]

_LOGGER = logging.getLogger(__name__)


class StepOutcome(StrEnum):
    """What happened to a single plan step."""

    APPLIED = "applied"
    FAILED = "failed"

    SKIPPED = "skipped"
    """A dependency of the step failed or was skipped."""

    NOT_ATTEMPTED = "not-attempted"
    """The apply stopped or was cancelled before the step was issued."""

    NOOP = "noop"

    PLANNED = "planned"
    """The step would have been issued, used for dry runs."""


@dataclass
class StepResult:
    """The outcome of a single plan step."""

    step: PlanStep
    outcome: StepOutcome
    error: ApplyFailure | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": str(self.step.action),
            "resource": str(self.step.resource_id),
            "outcome": str(self.outcome),
            "error": str(self.error.cause) if self.error else "",
        }


@dataclass
class ApplyResult:
    """The outcome of applying a plan."""

    plan: Plan

    results: list[StepResult]
    """Per step outcomes in plan order."""

    state: AppliedState
    """The applied state after this apply, to be persisted by the caller."""

    cancelled: bool = False

    rollback: "ApplyResult | None" = None
    """The result of reverting the applied steps, if a rollback ran."""

    def _steps(self, outcome: StepOutcome) -> list[PlanStep]:
        return [result.step for result in self.results if result.outcome == outcome]

    @property
    def applied(self) -> list[PlanStep]:
        """Steps that were issued and succeeded, in plan order."""
        return self._steps(StepOutcome.APPLIED)

    @property
    def skipped(self) -> list[PlanStep]:
        return self._steps(StepOutcome.SKIPPED)

    @property
    def not_attempted(self) -> list[PlanStep]:
        return self._steps(StepOutcome.NOT_ATTEMPTED)

    @property
    def failures(self) -> list[ApplyFailure]:
        return [result.error for result in self.results if result.error is not None]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.failures and not self.skipped

    @property
    def rolled_back(self) -> bool:
        return self.rollback is not None and self.rollback.success

    def raise_for_status(self) -> None:
        """Raise an exception describing why the apply did not fully succeed."""
        if self.cancelled:
            raise ApplyCancelled([step.resource_id for step in self.applied])
        if failures := self.failures:
            if len(failures) == 1:
                raise failures[0]
            raise ApplyError(failures)

    def to_dicts(self, include_noop: bool = False) -> list[dict[str, Any]]:
        return [
            result.to_dict()
            for result in self.results
            if include_noop or result.outcome != StepOutcome.NOOP
        ]


class _Run:
    """Mutable bookkeeping for a single apply."""

    def __init__(self, steps: list[PlanStep]) -> None:
        self.outcomes: dict[ResourceId, StepResult] = {}
        self.stopped = False
        self.cancelled = False
        self._steps = steps

    def record(self, result: StepResult) -> None:
        self.outcomes[result.step.resource_id] = result

    def cancel(self) -> None:
        """Mark every step without an outcome as not attempted."""
        self.cancelled = True
        for step in self._steps:
            if step.resource_id in self.outcomes:
                continue
            outcome = (
                StepOutcome.NOOP
                if step.action == Action.NOOP
                else StepOutcome.NOT_ATTEMPTED
            )
            self.record(StepResult(step, outcome))

    def results(self) -> list[StepResult]:
        return [self.outcomes[step.resource_id] for step in self._steps]

    def blocked(self, step: PlanStep) -> bool:
        """Return True if a dependency of the step did not succeed."""
        return any(
            (dep_result := self.outcomes.get(dep)) is not None
            and dep_result.outcome
            in (StepOutcome.FAILED, StepOutcome.SKIPPED, StepOutcome.NOT_ATTEMPTED)
            for dep in step.depends_on
        )


class Applier:
    """Issues the steps of a plan to a cluster endpoint."""

    def __init__(
        self, cluster: ClusterEndpoint, config: ApplierConfig | None = None
    ) -> None:
        self._cluster = cluster
        self._config = config or ApplierConfig()

    @property
    def config(self) -> ApplierConfig:
        return self._config

    async def apply(
        self,
        plan: Plan,
        state: AppliedState,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply the plan, returning the outcome and the resulting state."""
        if self._config.dry_run:
            return self._dry_run(plan, state)

        deadline: float | None = None
        if self._config.timeout is not None:
            deadline = asyncio.get_running_loop().time() + self._config.timeout

        def is_cancelled() -> bool:
            if cancel is not None and cancel.is_set():
                return True
            return (
                deadline is not None and asyncio.get_running_loop().time() >= deadline
            )

        _LOGGER.info(
            "Applying %d change(s) with policy %s",
            len(plan.changes),
            self._config.policy,
        )
        with trace_context("Apply"):
            run = _Run(plan.steps)
            try:
                if self._config.concurrency == 1:
                    await self._apply_sequential(plan.steps, run, is_cancelled)
                else:
                    await self._apply_concurrent(plan.steps, run, is_cancelled)
            except asyncio.CancelledError:
                _LOGGER.warning("Apply task cancelled, no further steps are issued")
                run.cancel()

        result = ApplyResult(
            plan=plan,
            results=run.results(),
            state=state,
            cancelled=run.cancelled,
        )
        result.state = self._next_state(result, state)
        if result.cancelled:
            _LOGGER.warning(
                "Apply cancelled after %d applied step(s)", len(result.applied)
            )
        elif result.failures:
            _LOGGER.error("Apply finished with %d failure(s)", len(result.failures))
            if (
                self._config.policy == ApplyPolicy.STOP_ON_FIRST_ERROR
                and self._config.rollback_on_failure
                and result.applied
            ):
                result.rollback = await self.rollback(result, state)
        else:
            _LOGGER.info(
                "Applied %d change(s), state generation %d",
                len(result.applied),
                result.state.generation,
            )
        return result

    def _dry_run(self, plan: Plan, state: AppliedState) -> ApplyResult:
        _LOGGER.info("Dry run, %d change(s) not applied", len(plan.changes))
        results = [
            StepResult(
                step,
                StepOutcome.NOOP
                if step.action == Action.NOOP
                else StepOutcome.PLANNED,
            )
            for step in plan.steps
        ]
        return ApplyResult(plan=plan, results=results, state=state)

    async def _issue(self, step: PlanStep) -> None:
        _LOGGER.debug("Issuing %s %s", step.action, step.resource_id)
        if step.action in (Action.CREATE, Action.UPDATE) and step.document is None:
            raise ApplyFailure(
                step.resource_id, str(step.action), "step has no document to send"
            )
        try:
            if step.action == Action.CREATE:
                await self._cluster.create(step.document)  # type: ignore[arg-type]
            elif step.action == Action.UPDATE:
                await self._cluster.update(step.document)  # type: ignore[arg-type]
            elif step.action == Action.DELETE:
                await self._cluster.delete(step.resource_id)
        except OverlayException as err:
            raise ApplyFailure(step.resource_id, str(step.action), err) from err

    async def _run_step(self, step: PlanStep, run: _Run) -> bool:
        """Issue a single step and record its outcome."""
        task = asyncio.ensure_future(self._issue(step))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # The step was already issued, wait for the cluster to answer
            await asyncio.wait([task])
            self._record_issued(step, task, run)
            raise
        except ApplyFailure:
            pass
        return self._record_issued(step, task, run)

    def _record_issued(
        self, step: PlanStep, task: "asyncio.Future[None]", run: _Run
    ) -> bool:
        if (err := task.exception()) is None:
            _LOGGER.info("%s %s", step.action, step.resource_id)
            run.record(StepResult(step, StepOutcome.APPLIED))
            return True
        if not isinstance(err, ApplyFailure):
            raise err
        _LOGGER.error("%s", err)
        run.record(StepResult(step, StepOutcome.FAILED, err))
        if self._config.policy == ApplyPolicy.STOP_ON_FIRST_ERROR:
            run.stopped = True
        return False

    def _precheck(
        self, step: PlanStep, run: _Run, is_cancelled: Callable[[], bool]
    ) -> StepResult | None:
        """Return the outcome of a step that must not be issued."""
        if step.action == Action.NOOP:
            return StepResult(step, StepOutcome.NOOP)
        if run.stopped:
            return StepResult(step, StepOutcome.NOT_ATTEMPTED)
        if run.cancelled or is_cancelled():
            run.cancelled = True
            return StepResult(step, StepOutcome.NOT_ATTEMPTED)
        if run.blocked(step):
            _LOGGER.warning(
                "Skipping %s %s, a dependency did not succeed",
                step.action,
                step.resource_id,
            )
            return StepResult(step, StepOutcome.SKIPPED)
        return None

    async def _apply_sequential(
        self, steps: list[PlanStep], run: _Run, is_cancelled: Callable[[], bool]
    ) -> None:
        for step in steps:
            if (result := self._precheck(step, run, is_cancelled)) is not None:
                run.record(result)
                continue
            await self._run_step(step, run)

    async def _apply_concurrent(
        self, steps: list[PlanStep], run: _Run, is_cancelled: Callable[[], bool]
    ) -> None:
        sem = asyncio.Semaphore(self._config.concurrency)
        tasks: dict[ResourceId, asyncio.Task[None]] = {}
        upserts: list[asyncio.Task[None]] = []

        async def run_step(step: PlanStep, deps: list[asyncio.Task[None]]) -> None:
            if deps:
                await asyncio.wait(deps)
            if (result := self._precheck(step, run, is_cancelled)) is not None:
                run.record(result)
                return
            async with sem:
                # Stop or cancel may have happened while waiting for a worker
                if (result := self._precheck(step, run, is_cancelled)) is not None:
                    run.record(result)
                    return
                await self._run_step(step, run)

        for step in steps:
            # Only steps earlier in the plan are waited on
            deps = [tasks[dep] for dep in step.depends_on if dep in tasks]
            if step.action == Action.DELETE:
                deps = upserts + deps
            task = asyncio.create_task(run_step(step, deps))
            tasks[step.resource_id] = task
            if step.action != Action.DELETE:
                upserts.append(task)
        try:
            await asyncio.gather(*tasks.values())
        except asyncio.CancelledError:
            # Issued steps record their outcome before the run is cancelled
            if tasks:
                await asyncio.wait(tasks.values())
            raise

    def _next_state(self, result: ApplyResult, state: AppliedState) -> AppliedState:
        if result.cancelled:
            return state
        if not result.failures and not result.skipped:
            return AppliedState.from_manifests(
                state.key, result.plan.manifests, generation=state.generation + 1
            )
        if self._config.policy == ApplyPolicy.STOP_ON_FIRST_ERROR:
            return state
        manifests = state.manifests
        for step_result in result.results:
            step = step_result.step
            if step_result.outcome not in (StepOutcome.APPLIED, StepOutcome.NOOP):
                continue
            if step.action == Action.DELETE:
                if step.resource_id in manifests:
                    manifests.remove(step.resource_id)
            elif step.document is not None:
                if step.resource_id in manifests:
                    manifests.replace(step.document.copy())
                else:
                    manifests.add(step.document.copy())
        return AppliedState.from_manifests(
            state.key, manifests, generation=state.generation + 1
        )

    async def rollback(self, result: ApplyResult, previous: AppliedState) -> ApplyResult:
        """Revert the applied steps of a result in reverse order.

        Every inverse step is attempted even if an earlier one fails. The
        returned result carries the previous state.
        """
        steps = []
        for step in reversed(result.applied):
            if step.action == Action.CREATE:
                steps.append(
                    PlanStep(Action.DELETE, step.resource_id, previous=step.document)
                )
            elif step.action == Action.UPDATE and step.previous is not None:
                steps.append(
                    PlanStep(
                        Action.UPDATE,
                        step.resource_id,
                        document=_restorable(step.previous),
                        previous=step.document,
                    )
                )
            elif step.action == Action.DELETE and step.previous is not None:
                steps.append(
                    PlanStep(
                        Action.CREATE,
                        step.resource_id,
                        document=_restorable(step.previous),
                    )
                )
        _LOGGER.warning("Rolling back %d applied step(s)", len(steps))
        inverse = Plan(
            steps=steps,
            manifests=result.plan.previous,
            previous=result.plan.manifests,
        )
        applier = Applier(
            self._cluster,
            replace(
                self._config,
                policy=ApplyPolicy.BEST_EFFORT,
                concurrency=1,
                dry_run=False,
                timeout=None,
                rollback_on_failure=False,
            ),
        )
        with trace_context("Rollback"):
            run = _Run(inverse.steps)
            await applier._apply_sequential(inverse.steps, run, lambda: False)
        rollback = ApplyResult(plan=inverse, results=run.results(), state=previous)
        if rollback.failures:
            _LOGGER.error("Rollback finished with %d failure(s)", len(rollback.failures))
        return rollback


def _restorable(doc: ResourceDocument) -> ResourceDocument:
    """Return a document without server populated fields so it can be re-sent."""
    return ResourceDocument(contents=normalize(doc.contents, ()))
