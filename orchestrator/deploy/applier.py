"""Resource applier - submit a unit's manifests to the cluster."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..cluster.base import ClusterAPI
from ..config import settings
from ..core.cancel import CancelToken
from ..core.exceptions import TransientApplyError
from ..graph.models import DeployableUnit

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Outcome of applying one unit."""

    unit_id: str
    changed: bool
    attempts: int
    actions: dict[str, str] = field(default_factory=dict)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base... up to cap."""
    return min(base * 2 ** (attempt - 1), cap)


class ResourceApplier:
    """Applies deployable units, idempotently and with transient retries.

    A unit whose manifests are unchanged since its last successful apply is
    a no-op and is not sent to the cluster again.
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        base_dir: Optional[Path] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        """Initialize applier.

        Args:
            cluster: Shared cluster API client
            base_dir: Directory unit manifest paths are relative to
            backoff_base: First retry delay in seconds
            backoff_cap: Maximum retry delay in seconds
            max_attempts: Attempts before a transient error escalates
        """
        self.cluster = cluster
        self.base_dir = base_dir or Path.cwd()
        self.backoff_base = backoff_base if backoff_base is not None else settings.apply_backoff_base
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.apply_backoff_cap
        self.max_attempts = max_attempts or settings.apply_max_attempts
        self._applied: dict[str, str] = {}

    def is_current(self, unit: DeployableUnit) -> bool:
        """True if the unit was applied and has not changed since."""
        return self._applied.get(unit.id) == unit.fingerprint(self.base_dir)

    async def apply(
        self, unit: DeployableUnit, cancel: Optional[CancelToken] = None
    ) -> ApplyResult:
        """Apply every manifest of a unit.

        Args:
            unit: Unit to apply
            cancel: Run cancellation token

        Returns:
            What was applied and how many attempts it took

        Raises:
            ApplyRejected: If the cluster refused a manifest
            TransientApplyError: If every attempt failed transiently
            RunAborted: If cancelled while backing off
        """
        cancel = cancel or CancelToken()
        fingerprint = unit.fingerprint(self.base_dir)

        if self._applied.get(unit.id) == fingerprint:
            logger.info(f"Unit {unit.id} unchanged, skipping apply")
            return ApplyResult(unit_id=unit.id, changed=False, attempts=0)

        documents = unit.load_manifests(self.base_dir)
        attempt = 0

        while True:
            attempt += 1
            cancel.check()
            try:
                actions = await self._apply_documents(documents)
                break
            except TransientApplyError as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Unit {unit.id}: giving up after {attempt} attempts: {e.detail}"
                    )
                    raise TransientApplyError(unit.id, e.detail) from e

                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.warning(
                    f"Unit {unit.id}: transient apply error (attempt {attempt}/"
                    f"{self.max_attempts}, retrying in {delay:.1f}s): {e.detail}"
                )
                await cancel.sleep(delay)

        self._applied[unit.id] = fingerprint
        changed = any(action != "unchanged" for action in actions.values())
        logger.info(
            f"Applied unit {unit.id}: "
            + ", ".join(f"{name} {action}" for name, action in actions.items())
        )
        return ApplyResult(unit_id=unit.id, changed=changed, attempts=attempt, actions=actions)

    async def _apply_documents(self, documents: list[dict]) -> dict[str, str]:
        actions: dict[str, str] = {}
        for doc in documents:
            name = f"{doc['kind']}/{doc['metadata']['name']}"
            actions[name] = await self.cluster.apply_manifest(doc)
        return actions
