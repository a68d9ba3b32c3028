"""In-memory cluster backend.

Backs ``orchestrate run --dry-run`` and the test suite. It behaves like a
conformant cluster API: identical re-applies are reported as unchanged,
workloads report ready replicas once applied, and failures can be scripted
per object name.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from ..core.exceptions import ApplyRejected, TransientApplyError
from .base import ApplyAction, ClusterAPI, format_selector, object_key

logger = logging.getLogger(__name__)

WORKLOAD_KINDS = {"Deployment", "StatefulSet", "ReplicaSet", "DaemonSet"}


class InMemoryClusterAPI(ClusterAPI):
    """Cluster API that keeps objects in a dictionary.

    Attributes:
        objects: Applied objects keyed by (kind, namespace, name)
        apply_calls: Names of every document submitted, in call order
        reject: Object name -> validation message to reject with
        transient_failures: Object name -> number of transient failures left
        never_ready: Object names whose workloads never report ready replicas
        ready_after: Object name -> status reads before replicas become ready
    """

    def __init__(
        self,
        reject: Optional[Dict[str, str]] = None,
        transient_failures: Optional[Dict[str, int]] = None,
        never_ready: Optional[set[str]] = None,
        ready_after: Optional[Dict[str, int]] = None,
    ):
        self.objects: Dict[tuple[str, str, str], Dict[str, Any]] = {}
        self.apply_calls: List[str] = []
        self.status_calls = 0
        self.reject = reject or {}
        self.transient_failures = dict(transient_failures or {})
        self.never_ready = never_ready or set()
        self.ready_after = dict(ready_after or {})
        self._generation = 0

    async def apply_manifest(self, doc: Dict[str, Any]) -> ApplyAction:
        key = object_key(doc)
        kind, namespace, name = key
        self.apply_calls.append(name)

        if name in self.reject:
            raise ApplyRejected(name, self.reject[name])

        if self.transient_failures.get(name, 0) > 0:
            self.transient_failures[name] -= 1
            raise TransientApplyError(name, "connection refused")

        desired = copy.deepcopy(doc)
        desired.pop("status", None)

        existing = self.objects.get(key)
        if existing is not None:
            current = {k: v for k, v in existing.items() if k != "status"}
            current_meta = {
                k: v for k, v in current.get("metadata", {}).items()
                if k != "resourceVersion"
            }
            if {**current, "metadata": current_meta} == desired:
                return "unchanged"

        self._generation += 1
        desired.setdefault("metadata", {})["resourceVersion"] = str(self._generation)
        desired["status"] = {}
        self.objects[key] = desired
        logger.debug(f"Stored {kind} {namespace}/{name}")
        return "configured" if existing is not None else "created"

    async def get_status(
        self,
        kind: str,
        name: str,
        namespace: str,
        api_version: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        self.status_calls += 1
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            return None

        if kind in WORKLOAD_KINDS:
            obj["status"] = self._workload_status(obj, name)

        return copy.deepcopy(obj)

    async def list_by_label(
        self,
        kind: str,
        namespace: str,
        selector: Dict[str, str] | str,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        wanted = dict(
            part.split("=", 1) for part in format_selector(selector).split(",") if part
        )
        matches = []
        for (obj_kind, obj_ns, _), obj in sorted(self.objects.items()):
            labels = obj.get("metadata", {}).get("labels") or {}
            if obj_kind == kind and obj_ns == namespace and all(
                labels.get(k) == v for k, v in wanted.items()
            ):
                matches.append(copy.deepcopy(obj))
        return matches

    def _workload_status(self, obj: Dict[str, Any], name: str) -> Dict[str, Any]:
        replicas = obj.get("spec", {}).get("replicas", 1)

        if name in self.never_ready:
            ready = 0
        elif self.ready_after.get(name, 0) > 0:
            self.ready_after[name] -= 1
            ready = 0
        else:
            ready = replicas

        return {
            "replicas": replicas,
            "readyReplicas": ready,
            "availableReplicas": ready,
        }
