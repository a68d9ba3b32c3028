"""Cluster API abstraction.

The orchestrator never owns cluster state. It only talks to a cluster
through this interface, so any conformant orchestration API can back it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional

ApplyAction = Literal["created", "configured", "unchanged"]

# apiVersion used when a status/list lookup only names a kind
DEFAULT_API_VERSIONS: Dict[str, str] = {
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "ReplicaSet": "apps/v1",
    "Job": "batch/v1",
    "Service": "v1",
    "Pod": "v1",
    "ConfigMap": "v1",
    "Secret": "v1",
    "PersistentVolumeClaim": "v1",
    "Namespace": "v1",
    "ServiceAccount": "v1",
    "Ingress": "networking.k8s.io/v1",
}


def object_key(doc: Dict[str, Any]) -> tuple[str, str, str]:
    """(kind, namespace, name) identity of a manifest document."""
    metadata = doc.get("metadata") or {}
    return (
        doc.get("kind", ""),
        metadata.get("namespace") or "default",
        metadata.get("name", ""),
    )


def format_selector(selector: Dict[str, str] | str) -> str:
    """Render a label selector mapping as ``k=v,k2=v2``."""
    if isinstance(selector, str):
        return selector
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


class ClusterAPI(ABC):
    """Base class for cluster API backends."""

    @abstractmethod
    async def apply_manifest(self, doc: Dict[str, Any]) -> ApplyAction:
        """Create or update one manifest document.

        Args:
            doc: Manifest document (apiVersion, kind, metadata, ...)

        Returns:
            What the cluster did with it

        Raises:
            ApplyRejected: If the API refused the document
            TransientApplyError: If the API was unavailable
        """

    @abstractmethod
    async def get_status(
        self,
        kind: str,
        name: str,
        namespace: str,
        api_version: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a resource as the cluster currently sees it.

        Returns:
            Resource object (spec and status), or None if absent
        """

    @abstractmethod
    async def list_by_label(
        self,
        kind: str,
        namespace: str,
        selector: Dict[str, str] | str,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List resources of a kind matching a label selector."""

    async def close(self) -> None:
        """Release client resources."""
