"""End-to-end orchestration runs against the in-memory cluster.

Scenarios:
- Voting app deploys in dependency order and succeeds
- A pipeline with an isolated front end keeps stores before worker before result
- A rejected unit fails its dependents, independent branches still deploy
- Abort mid-deploy stops further applies without tearing anything down
- Deploy stage timeout fails the run
- Re-running an unchanged graph is idempotent
- Transient apply errors are retried
"""

import asyncio
from pathlib import Path
from typing import Any, Optional

import pytest

from orchestrator.cluster.memory import InMemoryClusterAPI
from orchestrator.deploy.applier import ResourceApplier
from orchestrator.engine.history import RunHistory
from orchestrator.engine.orchestrator import OrchestrationEngine
from orchestrator.engine.run import RunState, UnitStatus
from orchestrator.graph.loader import GraphLoader
from orchestrator.graph.models import GraphDefinition

VOTING_APP_DEPS = {
    "redis": set(),
    "db": set(),
    "worker": {"redis", "db"},
    "vote": {"redis"},
    "result": {"db"},
}

# Five services where vote has no dependencies and no dependents
PIPELINE_DEPS = {
    "redis": set(),
    "postgres": set(),
    "worker": {"redis", "postgres"},
    "result": {"worker"},
    "vote": set(),
}


class RecordingCluster(InMemoryClusterAPI):
    """In-memory cluster that tracks concurrency and readiness order."""

    def __init__(
        self,
        apply_delay: float = 0.01,
        deps: Optional[dict[str, set[str]]] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.apply_delay = apply_delay
        self.deps = VOTING_APP_DEPS if deps is None else deps
        self.active = 0
        self.peak = 0
        self.ready_seen: set[str] = set()
        self.premature: list[str] = []

    async def apply_manifest(self, doc: dict[str, Any]):
        name = doc["metadata"]["name"]
        missing = self.deps.get(name, set()) - self.ready_seen
        if missing:
            self.premature.append(name)

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.apply_delay)
            return await super().apply_manifest(doc)
        finally:
            self.active -= 1

    async def get_status(self, kind, name, namespace, api_version: Optional[str] = None):
        status = await super().get_status(kind, name, namespace, api_version)
        if status and status["status"].get("readyReplicas", 0) >= status["spec"].get("replicas", 1):
            self.ready_seen.add(name)
        return status


def fast_engine(cluster: InMemoryClusterAPI, **kwargs: Any) -> OrchestrationEngine:
    """Engine with short polls and retry delays."""
    kwargs.setdefault(
        "applier", ResourceApplier(cluster, backoff_base=0.001, backoff_cap=0.01, max_attempts=3)
    )
    return OrchestrationEngine(cluster, poll_interval=0.01, readiness_timeout=2, **kwargs)


async def wait_for_status(engine: OrchestrationEngine, unit_id: str, status: UnitStatus) -> None:
    """Poll the engine's current run until a unit reaches a status."""
    for _ in range(500):
        run = engine.current_run
        if run is not None and unit_id in run.units and run.units[unit_id].status == status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{unit_id} never reached {status.value}")


class TestVotingApp:
    """Full voting-app deployment."""

    @pytest.mark.asyncio
    async def test_deploys_in_dependency_order(self, voting_app_graph: GraphDefinition) -> None:
        """Every unit starts only after all of its dependencies are Ready."""
        cluster = RecordingCluster(ready_after={"redis": 2, "db": 3})

        run = await fast_engine(cluster).run(voting_app_graph)

        assert run.state == RunState.SUCCEEDED
        assert run.state.exit_code == 0
        assert cluster.premature == []
        assert set(run.units_with_status(UnitStatus.READY)) == set(VOTING_APP_DEPS)

        order = run.application_order
        for unit_id, deps in VOTING_APP_DEPS.items():
            for dep in deps:
                assert order.index(dep) < order.index(unit_id)

    @pytest.mark.asyncio
    async def test_independent_roots_deploy_concurrently(
        self, voting_app_graph: GraphDefinition
    ) -> None:
        """redis and db are applied in parallel, bounded by the root count."""
        cluster = RecordingCluster(apply_delay=0.05)

        run = await fast_engine(cluster).run(voting_app_graph)

        assert run.state == RunState.SUCCEEDED
        assert cluster.peak == 2

    @pytest.mark.asyncio
    async def test_parallelism_bound_respected(self, voting_app_graph: GraphDefinition) -> None:
        """An explicit bound of one serializes every apply."""
        cluster = RecordingCluster(apply_delay=0.02)

        run = await fast_engine(cluster, max_parallelism=1).run(voting_app_graph)

        assert run.state == RunState.SUCCEEDED
        assert cluster.peak == 1

    @pytest.mark.asyncio
    async def test_report_lists_units_in_order(
        self, voting_app_graph: GraphDefinition, state_dir
    ) -> None:
        """The stored report lists every unit in deployment order."""
        history = RunHistory(state_dir)
        cluster = InMemoryClusterAPI()

        run = await fast_engine(cluster, history=history).run(voting_app_graph)

        report = history.get(run.run_id).report
        units = [u["unit_id"] for u in report["units"]]
        assert sorted(units) == sorted(VOTING_APP_DEPS)
        assert units.index("worker") > units.index("redis")
        assert units.index("worker") > units.index("db")
        assert [t["state"] for t in report["history"]] == [
            "Planning",
            "Deploying",
            "Probing",
            "Succeeded",
        ]


class TestPipelineWithIsolatedFrontEnd:
    """redis and postgres feed worker, worker feeds result, vote is isolated."""

    @pytest.fixture
    def pipeline_graph(self, unit_factory) -> GraphDefinition:
        return GraphDefinition(
            name="pipeline",
            units=[unit_factory(uid, sorted(deps)) for uid, deps in PIPELINE_DEPS.items()],
        )

    @pytest.mark.asyncio
    async def test_application_order(self, pipeline_graph: GraphDefinition) -> None:
        """Stores are applied before worker, and worker before result."""
        cluster = RecordingCluster(deps=PIPELINE_DEPS, ready_after={"redis": 2, "postgres": 3})

        run = await fast_engine(cluster).run(pipeline_graph)

        assert run.state == RunState.SUCCEEDED
        assert cluster.premature == []
        assert set(run.units_with_status(UnitStatus.READY)) == set(PIPELINE_DEPS)

        order = run.application_order
        assert order.index("redis") < order.index("worker")
        assert order.index("postgres") < order.index("worker")
        assert order.index("worker") < order.index("result")

    @pytest.mark.asyncio
    async def test_vote_not_held_back(self, pipeline_graph: GraphDefinition) -> None:
        """vote is applied with the stores rather than after the pipeline."""
        cluster = RecordingCluster(deps=PIPELINE_DEPS, ready_after={"redis": 3, "postgres": 3})

        run = await fast_engine(cluster, max_parallelism=3).run(pipeline_graph)

        assert run.units["vote"].status == UnitStatus.READY
        assert run.application_order.index("vote") < run.application_order.index("worker")

    @pytest.mark.asyncio
    async def test_failed_store_spares_vote(self, pipeline_graph: GraphDefinition) -> None:
        """A rejected postgres fails worker and result; vote still becomes Ready."""
        cluster = InMemoryClusterAPI(reject={"postgres": "bad image"})

        run = await fast_engine(cluster).run(pipeline_graph)

        assert run.state == RunState.FAILED
        assert run.units["vote"].status == UnitStatus.READY
        assert run.units["redis"].status == UnitStatus.READY
        for unit_id in ("worker", "result"):
            assert run.units[unit_id].status == UnitStatus.FAILED
            assert run.units[unit_id].errors[0].code == "DEPENDENCY_FAILED"


class TestPartialFailure:
    """A failing unit only takes down its descendants."""

    @pytest.mark.asyncio
    async def test_rejected_root_blocks_dependents(self, voting_app_graph: GraphDefinition) -> None:
        """redis rejected: vote and worker blocked, db and result Ready."""
        cluster = InMemoryClusterAPI(reject={"redis": "spec.replicas: Invalid value"})

        run = await fast_engine(cluster).run(voting_app_graph)

        assert run.state == RunState.FAILED
        assert run.state.exit_code == 1
        assert run.units["redis"].status == UnitStatus.FAILED
        assert run.units["redis"].errors[0].code == "APPLY_REJECTED"
        for unit_id in ("vote", "worker"):
            assert run.units[unit_id].status == UnitStatus.FAILED
            assert run.units[unit_id].errors[0].code == "DEPENDENCY_FAILED"
        assert run.units["db"].status == UnitStatus.READY
        assert run.units["result"].status == UnitStatus.READY
        assert "vote" not in cluster.apply_calls
        assert "worker" not in cluster.apply_calls

    @pytest.mark.asyncio
    async def test_rejection_not_retried(self, voting_app_graph: GraphDefinition) -> None:
        """Validation rejections fail immediately."""
        cluster = InMemoryClusterAPI(reject={"db": "bad image"})

        run = await fast_engine(cluster).run(voting_app_graph)

        assert cluster.apply_calls.count("db") == 1
        assert run.units["result"].errors[0].code == "DEPENDENCY_FAILED"

    @pytest.mark.asyncio
    async def test_errors_reported_in_unit_order(self, voting_app_graph: GraphDefinition) -> None:
        """Report errors follow deployment order."""
        cluster = InMemoryClusterAPI(reject={"redis": "bad"})

        run = await fast_engine(cluster).run(voting_app_graph)

        positions = {uid: i for i, uid in enumerate(run.units)}
        error_units = [e["unit_id"] for e in run.to_report()["errors"]]
        assert error_units == sorted(error_units, key=positions.__getitem__)


class TestAbort:
    """Aborting a run mid-deploy."""

    @pytest.mark.asyncio
    async def test_abort_while_waiting(self, voting_app_graph: GraphDefinition) -> None:
        """Abort ends the run Aborted, stops applies and keeps what is running."""
        cluster = InMemoryClusterAPI(never_ready={"db"})
        engine = OrchestrationEngine(cluster, poll_interval=0.01, readiness_timeout=30)

        task = asyncio.create_task(engine.run(voting_app_graph))
        await wait_for_status(engine, "db", UnitStatus.WAITING_READY)
        await wait_for_status(engine, "vote", UnitStatus.READY)
        applied_before_abort = list(cluster.apply_calls)

        engine.abort("test abort")
        run = await asyncio.wait_for(task, timeout=5)

        assert run.state == RunState.ABORTED
        assert run.state.exit_code == 130
        assert run.errors[-1].code == "ABORTED"
        assert cluster.apply_calls == applied_before_abort
        assert run.units["worker"].status == UnitStatus.PENDING
        assert run.units["result"].status == UnitStatus.PENDING
        assert run.units["redis"].status == UnitStatus.READY
        assert ("Deployment", "default", "redis") in cluster.objects

    @pytest.mark.asyncio
    async def test_abort_before_start(self, voting_app_graph: GraphDefinition) -> None:
        """A fresh run clears any earlier abort request."""
        cluster = InMemoryClusterAPI()
        engine = fast_engine(cluster)
        engine.abort("stale")

        run = await engine.run(voting_app_graph)

        assert run.state == RunState.SUCCEEDED


class TestDeployTimeout:
    """Deploy stage budget."""

    @pytest.mark.asyncio
    async def test_unit_never_ready_times_out(self, voting_app_graph: GraphDefinition) -> None:
        """A unit that never becomes ready fails the run at the deadline."""
        cluster = InMemoryClusterAPI(never_ready={"worker"})

        run = await fast_engine(cluster).run(voting_app_graph, timeout=0.3)

        assert run.state == RunState.FAILED
        assert run.units["worker"].status == UnitStatus.FAILED
        assert run.units["worker"].errors[0].code == "READINESS_TIMEOUT"
        assert run.units["vote"].status == UnitStatus.READY


class TestIdempotency:
    """Re-running an unchanged graph."""

    @pytest.mark.asyncio
    async def test_same_engine_skips_unchanged(self, voting_app_graph: GraphDefinition) -> None:
        """A second run applies nothing and still reaches Ready."""
        cluster = InMemoryClusterAPI()
        engine = fast_engine(cluster)

        await engine.run(voting_app_graph)
        calls_after_first = len(cluster.apply_calls)
        second = await engine.run(voting_app_graph)

        assert second.state == RunState.SUCCEEDED
        assert len(cluster.apply_calls) == calls_after_first
        assert all(not record.changed for record in second.units.values())

    @pytest.mark.asyncio
    async def test_fresh_engine_reports_unchanged(self, voting_app_graph: GraphDefinition) -> None:
        """A new process re-applies, but the cluster reports no change."""
        cluster = InMemoryClusterAPI()
        await fast_engine(cluster).run(voting_app_graph)
        objects_before = {k: v["metadata"]["resourceVersion"] for k, v in cluster.objects.items()}

        second = await fast_engine(cluster).run(voting_app_graph)

        assert second.state == RunState.SUCCEEDED
        assert all(not record.changed for record in second.units.values())
        assert {
            k: v["metadata"]["resourceVersion"] for k, v in cluster.objects.items()
        } == objects_before


class TestTransientRetry:
    """Transient apply errors."""

    @pytest.mark.asyncio
    async def test_retried_until_success(self, voting_app_graph: GraphDefinition) -> None:
        """Two transient failures then success: Ready after three attempts."""
        cluster = InMemoryClusterAPI(transient_failures={"redis": 2})

        run = await fast_engine(cluster).run(voting_app_graph)

        assert run.state == RunState.SUCCEEDED
        assert run.units["redis"].attempts == 3

    @pytest.mark.asyncio
    async def test_escalates_after_max_attempts(self, voting_app_graph: GraphDefinition) -> None:
        """Persistent transient errors escalate to a unit failure."""
        cluster = InMemoryClusterAPI(transient_failures={"db": 10})

        run = await fast_engine(cluster).run(voting_app_graph)

        assert run.state == RunState.FAILED
        assert run.units["db"].status == UnitStatus.FAILED
        assert run.units["db"].attempts == 3
        assert run.units["db"].errors[0].code == "APPLY_TRANSIENT"
        assert run.units["redis"].status == UnitStatus.READY


class TestExampleGraph:
    """The shipped voting-app example."""

    EXAMPLE = Path(__file__).parent.parent.parent / "examples" / "voting-app" / "graph.yaml"

    def test_example_loads(self) -> None:
        """The example graph validates, observability before the app."""
        loaded = GraphLoader().load(self.EXAMPLE)
        order = loaded.graph.topological_order()

        assert loaded.name == "voting-app"
        assert order.index("prometheus") < order.index("vote")
        assert order.index("vote") < order.index("locust")
        assert loaded.definition.loadtest.users == 50

    @pytest.mark.asyncio
    async def test_example_dry_run(self) -> None:
        """The example deploys cleanly against the in-memory cluster."""
        loaded = GraphLoader().load(self.EXAMPLE)
        cluster = InMemoryClusterAPI()

        run = await fast_engine(cluster).run(
            loaded.definition, base_dir=loaded.base_dir, run_probes=False, run_loadtest=False
        )

        assert run.state == RunState.SUCCEEDED
        assert ("StatefulSet", "vote", "db") in cluster.objects
        assert ("Deployment", "loadtest", "locust-worker") in cluster.objects
