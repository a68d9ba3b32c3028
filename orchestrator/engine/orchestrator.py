"""Orchestration engine - drive a graph through deploy, probe and load test.

Stages: Planning -> Deploying -> Probing -> LoadTesting, ending in
Succeeded, Degraded, Failed or Aborted.

Within Deploying every unit gets its own task. A unit starts once all of
its dependencies are Ready, so independent branches deploy concurrently,
bounded by a semaphore. A failed unit fails its dependents without
touching independent branches. Aborting stops further applies but never
tears down what is already running.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import httpx

from ..cluster.base import ClusterAPI
from ..config import settings
from ..core.cancel import CancelToken
from ..core.exceptions import (
    DependencyFailed,
    OrchestratorError,
    ProbeFailed,
    ReadinessTimeout,
    RunAborted,
    TransientApplyError,
)
from ..deploy.applier import ResourceApplier
from ..deploy.readiness import ReadinessGate
from ..graph.dependency import DependencyGraph
from ..graph.models import GraphDefinition
from ..loadtest.coordinator import LoadTestCoordinator, evaluate
from ..observability.logging import RunLoggerAdapter
from ..observability.telemetry import record_exception, traced_operation
from ..probes.prober import HealthProber, ProbeOutcome
from .history import RunHistory
from .run import DeploymentRun, ErrorRecord, RunState, UnitStatus

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    """Runs deployment graphs against a cluster.

    Usage:
        engine = OrchestrationEngine(cluster, history=RunHistory())
        run = await engine.run(definition, base_dir=graph_dir)
        sys.exit(run.state.exit_code)
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        prober: Optional[HealthProber] = None,
        coordinator: Optional[LoadTestCoordinator] = None,
        history: Optional[RunHistory] = None,
        applier: Optional[ResourceApplier] = None,
        poll_interval: Optional[float] = None,
        readiness_timeout: Optional[float] = None,
        max_parallelism: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize engine.

        Args:
            cluster: Shared (rate-limited) cluster API client
            prober: Health prober for observability endpoints
            coordinator: Load-test coordinator
            history: Run history to record finished runs in
            applier: Resource applier (created from cluster when None)
            poll_interval: Readiness poll interval
            readiness_timeout: Default per-unit readiness timeout
            max_parallelism: Explicit bound on concurrently deployed units
            http_client: Client for http readiness checks
        """
        self.cluster = cluster
        self.prober = prober
        self.coordinator = coordinator or LoadTestCoordinator()
        self.history = history
        self.applier = applier or ResourceApplier(cluster)
        self.poll_interval = poll_interval or settings.poll_interval
        self.readiness_timeout = readiness_timeout or settings.readiness_timeout
        self.max_parallelism = max_parallelism
        self.http_client = http_client
        self._cancel = CancelToken()
        self.current_run: Optional[DeploymentRun] = None

    def abort(self, reason: str = "abort requested") -> None:
        """Request the current run to stop at the next safe point."""
        logger.warning(f"Abort requested: {reason}")
        self._cancel.cancel(reason)

    def parallelism_for(self, graph: DependencyGraph, override: Optional[int] = None) -> int:
        """Concurrent unit deployments: explicit bound, else one per root capped by settings."""
        if override or self.max_parallelism:
            return max(1, override or self.max_parallelism)
        return max(1, min(len(graph.roots()), settings.max_parallelism))

    async def run(
        self,
        definition: GraphDefinition,
        base_dir: Optional[Path] = None,
        run_loadtest: bool = True,
        run_probes: bool = True,
        timeout: Optional[float] = None,
    ) -> DeploymentRun:
        """Execute one orchestration run.

        Args:
            definition: Graph to deploy
            base_dir: Directory manifest paths are relative to
            run_loadtest: Run the graph's load test if it has one
            run_probes: Probe unit endpoints after deploying
            timeout: Budget in seconds for the Deploying stage

        Returns:
            The finished run, in a terminal state
        """
        self._cancel = CancelToken()
        run = DeploymentRun(definition.name, [])
        self.current_run = run
        log = RunLoggerAdapter(logger, run.run_id)
        log.info(f"Starting run for graph {definition.name}")

        self.applier.base_dir = base_dir or Path.cwd()

        try:
            with traced_operation("orchestration_run", {"graph": definition.name, "run.id": run.run_id}):
                await self._execute(run, definition, run_loadtest, run_probes, timeout, log)
        except Exception as e:
            record_exception(e)
            log.exception(f"Run failed in stage {run.state.value}: {e}")
            if not run.is_finished:
                run.record_error(ErrorRecord.from_exception(run.state, e))
                run.transition(RunState.FAILED)
        finally:
            if not run.is_finished:
                run.transition(RunState.FAILED)
            if self.history is not None:
                self.history.append(run)

        log.info(f"Run finished: {run.state.value}")
        return run

    async def _execute(
        self,
        run: DeploymentRun,
        definition: GraphDefinition,
        run_loadtest: bool,
        run_probes: bool,
        timeout: Optional[float],
        log: logging.LoggerAdapter,
    ) -> None:
        # Planning
        try:
            graph = DependencyGraph.from_units(definition.units)
            order = graph.topological_order()
        except OrchestratorError as e:
            log.error(f"Planning failed: {e}")
            run.record_error(ErrorRecord.from_exception(RunState.PLANNING, e))
            run.transition(RunState.FAILED)
            return

        run.add_units(order)
        log.info(f"Deployment order: {' -> '.join(order)}")

        if self._stop_if_aborted(run):
            return

        # Deploying
        run.transition(RunState.DEPLOYING)
        with traced_operation("stage.deploying", {"units": str(len(order))}):
            await self._deploy(run, graph, definition, timeout, log)

        if self._stop_if_aborted(run):
            return

        failed = run.units_with_status(UnitStatus.FAILED)
        if failed:
            log.error(f"Deployment failed for: {', '.join(failed)}")
            run.transition(RunState.FAILED)
            return

        # Probing
        run.transition(RunState.PROBING)
        with traced_operation("stage.probing"):
            if run_probes:
                probe_failed, degraded = await self._probe(run, graph, log)
            else:
                log.info("Endpoint probing skipped")
                probe_failed = degraded = False

        if self._stop_if_aborted(run):
            return
        if probe_failed:
            run.transition(RunState.FAILED)
            return

        # Load testing
        if definition.loadtest is not None and run_loadtest:
            run.transition(RunState.LOAD_TESTING)
            with traced_operation("stage.load_testing", {"target": definition.loadtest.target_url}):
                outcome = await self._load_test(run, definition, log)
            if outcome is not None:
                run.transition(outcome)
                return
            degraded = degraded or bool(run.load_test_violations)

        run.transition(RunState.DEGRADED if degraded else RunState.SUCCEEDED)

    def _stop_if_aborted(self, run: DeploymentRun) -> bool:
        if self._cancel.cancelled and not run.is_finished:
            run.record_error(
                ErrorRecord.from_exception(run.state, RunAborted(f"Run aborted: {self._cancel.reason}"))
            )
            run.transition(RunState.ABORTED)
            return True
        return False

    # ------------------------------------------------------------------
    # Deploying
    # ------------------------------------------------------------------

    async def _deploy(
        self,
        run: DeploymentRun,
        graph: DependencyGraph,
        definition: GraphDefinition,
        timeout: Optional[float],
        log: logging.LoggerAdapter,
    ) -> None:
        overrides = definition.settings
        gate = ReadinessGate(
            self.cluster,
            poll_interval=overrides.poll_interval or self.poll_interval,
            default_timeout=overrides.readiness_timeout or self.readiness_timeout,
            http_client=self.http_client,
        )
        parallelism = self.parallelism_for(graph, overrides.max_parallelism)
        semaphore = asyncio.Semaphore(parallelism)
        deadline = time.monotonic() + timeout if timeout else None
        done = {uid: asyncio.Event() for uid in run.units}
        failed: set[str] = set()

        log.info(f"Deploying {len(run.units)} units with parallelism {parallelism}")

        await asyncio.gather(
            *(
                self._deploy_unit(run, graph, uid, gate, semaphore, done, failed, deadline, log)
                for uid in run.units
            )
        )

    async def _deploy_unit(
        self,
        run: DeploymentRun,
        graph: DependencyGraph,
        unit_id: str,
        gate: ReadinessGate,
        semaphore: asyncio.Semaphore,
        done: dict[str, asyncio.Event],
        failed: set[str],
        deadline: Optional[float],
        log: logging.LoggerAdapter,
    ) -> None:
        unit = graph.get(unit_id)

        try:
            for dep in sorted(unit.depends_on):
                await done[dep].wait()

            blocked = sorted(dep for dep in unit.depends_on if dep in failed)
            if blocked:
                failed.add(unit_id)
                await run.set_unit_status(
                    unit_id,
                    UnitStatus.FAILED,
                    error=ErrorRecord.from_exception(
                        RunState.DEPLOYING, DependencyFailed(unit_id, blocked), unit_id
                    ),
                )
                log.warning(
                    f"Unit {unit_id} skipped: dependency failed ({', '.join(blocked)})",
                    extra={"unit_id": unit_id},
                )
                return

            if self._cancel.cancelled:
                return

            async with semaphore:
                self._cancel.check()
                with traced_operation("deploy_unit", {"unit.id": unit_id}):
                    await self._apply_and_wait(run, unit, gate, deadline, log)

        except RunAborted:
            log.warning(f"Unit {unit_id} interrupted by abort", extra={"unit_id": unit_id})
        except Exception as e:
            failed.add(unit_id)
            record_exception(e)
            if not isinstance(e, OrchestratorError):
                log.exception(f"Unexpected error deploying {unit_id}", extra={"unit_id": unit_id})
            else:
                log.error(f"Unit {unit_id} failed: {e}", extra={"unit_id": unit_id})
            attempts = (
                self.applier.max_attempts
                if isinstance(e, TransientApplyError)
                else run.units[unit_id].attempts
            )
            await run.set_unit_status(
                unit_id,
                UnitStatus.FAILED,
                error=ErrorRecord.from_exception(RunState.DEPLOYING, e, unit_id),
                attempts=attempts,
            )
        finally:
            done[unit_id].set()

    async def _apply_and_wait(self, run, unit, gate, deadline, log) -> None:
        await run.set_unit_status(unit.id, UnitStatus.APPLYING)
        result = await self.applier.apply(unit, self._cancel)

        await run.set_unit_status(
            unit.id,
            UnitStatus.WAITING_READY,
            attempts=result.attempts,
            changed=result.changed,
        )

        timeout = unit.readiness.timeout or gate.default_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(unit.id, 0, "deploy stage timeout reached")
            timeout = min(timeout, remaining)

        ready = await gate.wait_ready(unit, timeout, self._cancel)
        await run.set_unit_status(unit.id, UnitStatus.READY, ready_after=round(ready.elapsed, 2))

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def _probe(
        self, run: DeploymentRun, graph: DependencyGraph, log: logging.LoggerAdapter
    ) -> tuple[bool, bool]:
        """Probe every unit endpoint.

        Returns:
            (fatal, degraded): a required endpoint was unreachable /
            something was recorded as degraded
        """
        endpoints = [
            (uid, graph.get(uid).endpoint) for uid in run.units if graph.get(uid).endpoint
        ]
        if not endpoints:
            log.info("No observability endpoints to probe")
            return False, False

        if self.prober is not None:
            results = await self.prober.probe_all([e for _, e in endpoints])
        else:
            async with HealthProber() as prober:
                results = await prober.probe_all([e for _, e in endpoints])

        fatal = degraded = False
        for (unit_id, _), result in zip(endpoints, results):
            run.probes.append(result)
            if result.outcome == ProbeOutcome.HEALTHY:
                continue

            run.record_error(
                ErrorRecord.from_exception(
                    RunState.PROBING,
                    ProbeFailed(result.name, result.outcome.value, result.detail),
                    unit_id,
                )
            )
            if result.outcome == ProbeOutcome.UNREACHABLE and result.required:
                fatal = True
            else:
                degraded = True

        return fatal, degraded

    # ------------------------------------------------------------------
    # Load testing
    # ------------------------------------------------------------------

    async def _load_test(
        self, run: DeploymentRun, definition: GraphDefinition, log: logging.LoggerAdapter
    ) -> Optional[RunState]:
        """Run the load test.

        Returns:
            Terminal state to end the run in, or None to continue
        """
        spec = definition.loadtest
        try:
            result = await self.coordinator.run_load_test(spec, self._cancel)
        except RunAborted:
            return self._abort_state(run)
        except (OrchestratorError, httpx.HTTPError) as e:
            record_exception(e)
            log.error(f"Load test failed: {e}")
            run.record_error(ErrorRecord.from_exception(RunState.LOAD_TESTING, e))
            return RunState.FAILED

        run.load_test = result
        run.load_test_violations = evaluate(result, spec)
        for violation in run.load_test_violations:
            log.warning(f"Load test threshold violated: {violation}")
        return None

    def _abort_state(self, run: DeploymentRun) -> RunState:
        run.record_error(
            ErrorRecord.from_exception(run.state, RunAborted(f"Run aborted: {self._cancel.reason}"))
        )
        return RunState.ABORTED
