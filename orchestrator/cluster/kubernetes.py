"""Kubernetes cluster backend.

Uses the official ``kubernetes`` client's dynamic API with server-side
apply, so arbitrary kinds (including CRDs installed by Helm charts) can be
applied from plain manifests. The client is synchronous; every call runs in
a worker thread.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import urllib3
from kubernetes import client, config, dynamic
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from ..core.exceptions import ApplyRejected, TransientApplyError
from .base import (
    DEFAULT_API_VERSIONS,
    ApplyAction,
    ClusterAPI,
    format_selector,
    object_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses worth retrying: timeout, conflict, throttling
TRANSIENT_STATUSES = {408, 409, 429}


def classify_api_exception(unit_id: str, exc: ApiException) -> Exception:
    """Map an API exception to the apply error taxonomy.

    4xx responses are validation failures and keep the API body verbatim;
    5xx and throttling responses are transient.
    """
    status = exc.status or 0
    detail = exc.body if exc.body else (exc.reason or str(exc))
    if isinstance(detail, bytes):
        detail = detail.decode(errors="replace")

    if 400 <= status < 500 and status not in TRANSIENT_STATUSES:
        return ApplyRejected(unit_id, str(detail))
    return TransientApplyError(unit_id, f"HTTP {status}: {detail}")


class KubernetesClusterAPI(ClusterAPI):
    """Cluster API backed by a Kubernetes API server."""

    def __init__(
        self,
        context: Optional[str] = None,
        field_manager: str = "orchestrator",
        api_client: Optional[client.ApiClient] = None,
    ):
        """Initialize the backend.

        Args:
            context: kubeconfig context (current context when None)
            field_manager: Field manager recorded for server-side apply
            api_client: Preconfigured API client (loads kubeconfig when None)
        """
        if api_client is None:
            try:
                config.load_kube_config(context=context)
            except config.ConfigException:
                config.load_incluster_config()
            api_client = client.ApiClient()

        self.api_client = api_client
        self.field_manager = field_manager
        self._dynamic = dynamic.DynamicClient(api_client)

    def _resource(self, kind: str, api_version: Optional[str]):
        api_version = api_version or DEFAULT_API_VERSIONS.get(kind)
        if api_version:
            return self._dynamic.resources.get(api_version=api_version, kind=kind)
        return self._dynamic.resources.get(kind=kind)

    def _apply_sync(self, doc: Dict[str, Any]) -> ApplyAction:
        kind, namespace, name = object_key(doc)

        try:
            resource = self._resource(kind, doc.get("apiVersion"))
        except ResourceNotFoundError as e:
            raise ApplyRejected(name, f"Unknown resource {doc.get('apiVersion')}/{kind}: {e}") from e

        ns = namespace if resource.namespaced else None

        try:
            before = resource.get(name=name, namespace=ns)
            before_version = before.metadata.resourceVersion
        except NotFoundError:
            before_version = None

        after = self._dynamic.server_side_apply(
            resource,
            body=doc,
            name=name,
            namespace=ns,
            field_manager=self.field_manager,
            force_conflicts=True,
        )

        if before_version is None:
            return "created"
        if after.metadata.resourceVersion == before_version:
            return "unchanged"
        return "configured"

    async def apply_manifest(self, doc: Dict[str, Any]) -> ApplyAction:
        _, _, name = object_key(doc)
        try:
            return await asyncio.to_thread(self._apply_sync, doc)
        except ApiException as e:
            raise classify_api_exception(name, e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientApplyError(name, str(e)) from e

    async def get_status(
        self,
        kind: str,
        name: str,
        namespace: str,
        api_version: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        def _get() -> Optional[Dict[str, Any]]:
            resource = self._resource(kind, api_version)
            ns = namespace if resource.namespaced else None
            try:
                return resource.get(name=name, namespace=ns).to_dict()
            except NotFoundError:
                return None

        return await self._read(name, _get)

    async def list_by_label(
        self,
        kind: str,
        namespace: str,
        selector: Dict[str, str] | str,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        def _list() -> List[Dict[str, Any]]:
            resource = self._resource(kind, api_version)
            ns = namespace if resource.namespaced else None
            result = resource.get(namespace=ns, label_selector=format_selector(selector))
            return [item.to_dict() for item in result.items]

        return await self._read(kind, _list)

    async def _read(self, subject: str, func: Callable[[], T]) -> T:
        """Run a read in a worker thread with the apply error taxonomy."""
        try:
            return await asyncio.to_thread(func)
        except ResourceNotFoundError as e:
            raise ApplyRejected(subject, f"Unknown resource kind: {e}") from e
        except ApiException as e:
            raise classify_api_exception(subject, e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientApplyError(subject, str(e)) from e

    async def close(self) -> None:
        await asyncio.to_thread(self.api_client.close)
