"""Tests for applying plans to a cluster."""

import asyncio

import pytest

from overlay_apply.applier import Applier, StepOutcome
from overlay_apply.cluster import InMemoryCluster
from overlay_apply.config import ApplierConfig, ApplyPolicy
from overlay_apply.exceptions import ApplyCancelled, ApplyError, ApplyFailure
from overlay_apply.manifest import ManifestSet, ResourceDocument, ResourceId
from overlay_apply.plan import Action, Plan, PlanStep, build_plan
from overlay_apply.state import AppliedState

KEY = "default/app"


def config_map(name: str, value: str = "1") -> ResourceDocument:
    return ResourceDocument.parse_doc(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": "app"},
            "data": {"value": value},
        }
    )


def config_map_id(name: str) -> ResourceId:
    return ResourceId("", "ConfigMap", "app", name)


def namespace() -> ResourceDocument:
    return ResourceDocument.parse_doc(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "app"}}
    )


def deployment(config: str) -> ResourceDocument:
    return ResourceDocument.parse_doc(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "app"},
            "spec": {
                "template": {
                    "spec": {
                        "containers": [
                            {"name": "web", "envFrom": [{"configMapRef": {"name": config}}]}
                        ]
                    }
                }
            },
        }
    )


WEB_ID = ResourceId("apps", "Deployment", "app", "web")
NAMESPACE_ID = ResourceId("", "Namespace", None, "app")


def five_config_maps() -> ManifestSet:
    return ManifestSet([config_map(name) for name in "abcde"])


def outcomes(result) -> list[str]:  # type: ignore[no-untyped-def]
    return [str(step_result.outcome) for step_result in result.results]


def mutations(cluster: InMemoryCluster) -> list[str]:
    return [f"{op} {resource_id.name}" for op, resource_id in cluster.calls if op != "get"]


async def test_apply_all() -> None:
    """A successful apply snapshots the manifest set as the next generation."""
    manifests = ManifestSet([namespace(), config_map("settings"), deployment("settings")])
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    plan = build_plan(manifests, state.manifests)

    result = await Applier(cluster).apply(plan, state)
    result.raise_for_status()

    assert result.success
    assert mutations(cluster) == ["create app", "create settings", "create web"]
    assert result.state.generation == 1
    assert result.state.manifests == manifests
    assert set(cluster.documents) == set(manifests.ids())

    replan = build_plan(manifests, result.state.manifests)
    assert not replan.has_changes
    assert {str(step.action) for step in replan.steps} == {"Noop"}

    # Noop steps are never sent to the cluster
    cluster.calls.clear()
    result = await Applier(cluster).apply(replan, result.state)
    assert cluster.calls == []
    assert result.state.generation == 2


async def test_stop_on_first_error() -> None:
    """A failure at step three leaves the later steps unattempted."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    cluster.fail_on(config_map_id("c"), "admission webhook denied the request")
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster).apply(plan, state)

    assert outcomes(result) == [
        "applied",
        "applied",
        "failed",
        "not-attempted",
        "not-attempted",
    ]
    assert mutations(cluster) == ["create a", "create b", "create c"]
    assert result.state is state
    assert not result.success
    assert [step.resource_id.name for step in result.applied] == ["a", "b"]
    with pytest.raises(ApplyFailure, match="admission webhook denied") as exc_info:
        result.raise_for_status()
    assert exc_info.value.resource_id == config_map_id("c")
    assert exc_info.value.action == "Create"


async def test_best_effort() -> None:
    """Dependents of a failed step are skipped and the rest is applied."""
    manifests = ManifestSet(
        [namespace(), config_map("settings"), config_map("other"), deployment("settings")]
    )
    state = AppliedState(key=KEY, generation=3)
    cluster = InMemoryCluster()
    cluster.fail_on(config_map_id("settings"))
    plan = build_plan(manifests, state.manifests)

    result = await Applier(
        cluster, ApplierConfig(policy=ApplyPolicy.BEST_EFFORT)
    ).apply(plan, state)

    assert [
        (step_result.step.resource_id.name, str(step_result.outcome))
        for step_result in result.results
    ] == [
        ("app", "applied"),
        ("settings", "failed"),
        ("other", "applied"),
        ("web", "skipped"),
    ]
    assert mutations(cluster) == ["create app", "create settings", "create other"]

    # The state only holds what the cluster accepted
    assert result.state.generation == 4
    assert result.state.manifests.ids() == [NAMESPACE_ID, config_map_id("other")]

    # A retry plans exactly the failed and skipped steps
    replan = build_plan(manifests, result.state.manifests)
    assert [(str(step.action), step.resource_id) for step in replan.changes] == [
        ("Create", config_map_id("settings")),
        ("Create", WEB_ID),
    ]

    with pytest.raises(ApplyFailure):
        result.raise_for_status()


async def test_best_effort_multiple_failures() -> None:
    """Every failure of a best-effort apply is reported."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    cluster.fail_on(config_map_id("b"))
    cluster.fail_on(config_map_id("d"))
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(
        cluster, ApplierConfig(policy=ApplyPolicy.BEST_EFFORT)
    ).apply(plan, state)

    assert outcomes(result) == ["applied", "failed", "applied", "failed", "applied"]
    with pytest.raises(ApplyError, match="2 step") as exc_info:
        result.raise_for_status()
    assert [failure.resource_id for failure in exc_info.value.failures] == [
        config_map_id("b"),
        config_map_id("d"),
    ]


async def test_best_effort_delete() -> None:
    """A successful delete is removed from the partial state."""
    previous = ManifestSet([config_map("old"), config_map("keep")])
    state = AppliedState.from_manifests(KEY, previous, generation=1)
    cluster = InMemoryCluster(list(previous))
    cluster.fail_on(config_map_id("new"))
    plan = build_plan(ManifestSet([config_map("keep"), config_map("new")]), previous)

    result = await Applier(
        cluster, ApplierConfig(policy=ApplyPolicy.BEST_EFFORT)
    ).apply(plan, state)

    assert mutations(cluster) == ["create new", "delete old"]
    assert result.state.manifests.ids() == [config_map_id("keep")]


async def test_dry_run() -> None:
    """A dry run never contacts the cluster."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster, ApplierConfig(dry_run=True)).apply(plan, state)

    assert cluster.calls == []
    assert result.state is state
    assert outcomes(result) == ["planned"] * 5
    result.raise_for_status()


async def test_cancel_before_apply() -> None:
    """A cancelled apply issues nothing."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    cancel = asyncio.Event()
    cancel.set()
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster).apply(plan, state, cancel=cancel)

    assert result.cancelled
    assert cluster.calls == []
    assert outcomes(result) == ["not-attempted"] * 5
    assert result.state is state


class CancellingCluster(InMemoryCluster):
    """Requests cancellation while a resource is being created."""

    def __init__(self, name: str, cancel: asyncio.Event) -> None:
        super().__init__()
        self._name = name
        self._cancel = cancel

    async def create(self, doc: ResourceDocument) -> None:
        if doc.name == self._name:
            self._cancel.set()
        await asyncio.sleep(0)
        await super().create(doc)


async def test_cancel_between_steps() -> None:
    """An issued step completes and no further steps are issued."""
    state = AppliedState(key=KEY)
    cancel = asyncio.Event()
    cluster = CancellingCluster("b", cancel)
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster).apply(plan, state, cancel=cancel)

    assert result.cancelled
    assert mutations(cluster) == ["create a", "create b"]
    assert outcomes(result) == [
        "applied",
        "applied",
        "not-attempted",
        "not-attempted",
        "not-attempted",
    ]
    assert result.state is state
    with pytest.raises(ApplyCancelled) as exc_info:
        result.raise_for_status()
    assert exc_info.value.applied == [config_map_id("a"), config_map_id("b")]


class BlockingCluster(InMemoryCluster):
    """Holds creates of the named resources until released."""

    def __init__(self, names: set[str]) -> None:
        super().__init__()
        self._names = names
        self._waiting: set[str] = set()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def create(self, doc: ResourceDocument) -> None:
        if doc.name in self._names:
            self._waiting.add(doc.name)
            if self._waiting == self._names:
                self.started.set()
            await self.release.wait()
        await super().create(doc)


@pytest.mark.parametrize(
    ("concurrency", "blocked", "expected"),
    [
        (1, {"b"}, ["applied", "applied", "not-attempted"]),
        (2, {"a", "b"}, ["applied", "applied", "not-attempted"]),
    ],
)
async def test_cancel_apply_task(
    concurrency: int, blocked: set[str], expected: list[str]
) -> None:
    """Cancelling the apply task waits for issued steps and reports them."""
    state = AppliedState(key=KEY)
    cluster = BlockingCluster(blocked)
    plan = build_plan(ManifestSet([config_map(name) for name in "abc"]), state.manifests)

    task = asyncio.create_task(
        Applier(cluster, ApplierConfig(concurrency=concurrency)).apply(plan, state)
    )
    await cluster.started.wait()
    task.cancel()
    cluster.release.set()
    result = await task

    assert result.cancelled
    assert outcomes(result) == expected
    assert set(cluster.documents) == {config_map_id("a"), config_map_id("b")}
    assert result.state is state
    with pytest.raises(ApplyCancelled) as exc_info:
        result.raise_for_status()
    assert exc_info.value.applied == [config_map_id("a"), config_map_id("b")]


async def test_step_without_document() -> None:
    """A create step without a document fails instead of reaching the cluster."""
    step = PlanStep(Action.CREATE, config_map_id("a"))
    cluster = InMemoryCluster()

    result = await Applier(cluster).apply(
        Plan(steps=[step], manifests=ManifestSet()), AppliedState(key=KEY)
    )

    assert cluster.calls == []
    assert outcomes(result) == ["failed"]
    with pytest.raises(ApplyFailure, match="no document"):
        result.raise_for_status()


async def test_timeout() -> None:
    """An expired timeout cancels the apply."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster, ApplierConfig(timeout=0)).apply(plan, state)

    assert result.cancelled
    assert cluster.calls == []
    with pytest.raises(ApplyCancelled):
        result.raise_for_status()


class SlowCluster(InMemoryCluster):
    """Tracks how many mutations are in flight at once."""

    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def create(self, doc: ResourceDocument) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            await super().create(doc)
        finally:
            self.in_flight -= 1


async def test_concurrent_apply() -> None:
    """Independent steps run concurrently and dependencies are respected."""
    manifests = ManifestSet(
        [
            namespace(),
            *[config_map(name) for name in "abcde"],
            config_map("settings"),
            deployment("settings"),
        ]
    )
    state = AppliedState(key=KEY)
    cluster = SlowCluster()
    plan = build_plan(manifests, state.manifests)

    result = await Applier(cluster, ApplierConfig(concurrency=3)).apply(plan, state)
    result.raise_for_status()

    calls = mutations(cluster)
    assert calls[0] == "create app"
    assert calls[-1] == "create web"
    assert len(calls) == 8
    assert 1 < cluster.max_in_flight <= 3
    assert result.state.manifests == manifests


async def test_concurrent_stop_on_first_error() -> None:
    """A concurrent apply stops issuing steps after a failure."""
    manifests = ManifestSet([namespace(), config_map("settings"), deployment("settings")])
    state = AppliedState(key=KEY)
    cluster = SlowCluster()
    cluster.fail_on(NAMESPACE_ID)
    plan = build_plan(manifests, state.manifests)

    result = await Applier(cluster, ApplierConfig(concurrency=4)).apply(plan, state)

    assert mutations(cluster) == ["create app"]
    assert outcomes(result) == ["failed", "not-attempted", "not-attempted"]
    assert result.state is state


async def test_rollback() -> None:
    """Applied steps are reverted when the apply stops on a failure."""
    previous = ManifestSet([config_map("x", "old")])
    state = AppliedState.from_manifests(KEY, previous, generation=1)
    cluster = InMemoryCluster(list(previous))
    cluster.fail_on(config_map_id("z"))
    manifests = ManifestSet([config_map("x", "new"), config_map("y"), config_map("z")])
    plan = build_plan(manifests, previous)
    assert [str(step.action) for step in plan.steps] == ["Update", "Create", "Create"]

    result = await Applier(
        cluster, ApplierConfig(rollback_on_failure=True)
    ).apply(plan, state)

    assert result.rollback is not None
    assert result.rolled_back
    assert [
        (str(step.action), step.resource_id.name)
        for step in result.rollback.applied
    ] == [("Delete", "y"), ("Update", "x")]
    assert mutations(cluster) == [
        "update x",
        "create y",
        "create z",
        "delete y",
        "update x",
    ]
    assert set(cluster.documents) == {config_map_id("x")}
    assert cluster.documents[config_map_id("x")].contents["data"] == {"value": "old"}
    assert result.state is state


async def test_no_rollback_by_default() -> None:
    """Without rollback the applied steps stay in place."""
    state = AppliedState(key=KEY)
    cluster = InMemoryCluster()
    cluster.fail_on(config_map_id("c"))
    plan = build_plan(five_config_maps(), state.manifests)

    result = await Applier(cluster).apply(plan, state)

    assert result.rollback is None
    assert set(cluster.documents) == {config_map_id("a"), config_map_id("b")}


def test_invalid_concurrency() -> None:
    """The concurrency limit must be positive."""
    with pytest.raises(ValueError, match="concurrency"):
        ApplierConfig(concurrency=0)


def test_step_outcome_values() -> None:
    """Outcomes serialize to stable strings."""
    assert str(StepOutcome.NOT_ATTEMPTED) == "not-attempted"
    assert str(Action.NOOP) == "Noop"
