"""
Thin asynchronous wrappers around the Kubernetes client.

Every dependent resource kind gets a ``KubernetesResourceOperator`` which reads,
creates, patches and deletes plain dict manifests. Blocking client calls are
pushed to a worker thread so the event loop keeps serving other reconciliations.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import API_GROUP, API_VERSION
from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0

_serializer: Optional[client.ApiClient] = None


def to_dict(obj: Any) -> Any:
    """Convert a client model object into the camelCase dict the API server speaks."""
    global _serializer
    if obj is None or isinstance(obj, dict):
        return obj
    if _serializer is None:
        _serializer = client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)


class Operation(str, Enum):
    NOOP = 'noop'
    CREATED = 'created'
    PATCHED = 'patched'
    DELETED = 'deleted'


@dataclass
class ReconcileResult:
    kind: str
    name: str
    operation: Operation
    desired: Optional[Dict[str, Any]] = None
    observed: Optional[Dict[str, Any]] = None

    @classmethod
    def noop(cls, kind: str, name: str, observed: Optional[Dict[str, Any]] = None) -> 'ReconcileResult':
        return cls(kind, name, Operation.NOOP, observed, observed)


def needs_patch(desired: Any, observed: Any) -> bool:
    """True if any field set in ``desired`` differs from ``observed``.

    Fields that only exist in ``observed`` are populated by the server and are
    not compared. The server omits empty strings, lists and maps, so an empty
    desired value matches a missing field.
    """
    if observed is None and isinstance(desired, (str, dict, list)) and not desired:
        return False
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return True
        return any(needs_patch(v, observed.get(k)) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return True
        return any(needs_patch(d, o) for d, o in zip(desired, observed))
    if isinstance(desired, (int, float)) and isinstance(observed, str):
        return str(desired) != observed
    return desired != observed


def _is_ready(pod: Dict[str, Any]) -> bool:
    for condition in (pod.get('status') or {}).get('conditions') or []:
        if condition.get('type') == 'Ready':
            return condition.get('status') == 'True'
    return False


class KubernetesResourceOperator:
    """CRUD for one namespaced kind, e.g. ``suffix='config_map'`` on ``CoreV1Api``."""

    def __init__(self, api, suffix: str, kind: str,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.api = api
        self.suffix = suffix
        self.kind = kind
        self.poll_interval = poll_interval

    async def _call(self, verb: str, *args, subresource: str = '', **kwargs):
        method = getattr(self.api, f'{verb}_namespaced_{self.suffix}{subresource}')
        return await asyncio.to_thread(method, *args, **kwargs)

    async def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return to_dict(await self._call('read', name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def list(self, namespace: str, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        result = await self._call('list', namespace, label_selector=selector or '')
        return [to_dict(item) for item in result.items]

    async def create(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        created = to_dict(await self._call('create', namespace, body))
        logger.info(f"Created {self.kind} {namespace}/{body['metadata']['name']}")
        return created

    async def patch(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        patched = to_dict(await self._call('patch', name, namespace, body))
        logger.info(f"Updated {self.kind} {namespace}/{name}")
        return patched

    async def delete(self, namespace: str, name: str) -> bool:
        try:
            await self._call('delete', name, namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        logger.info(f"Deleted {self.kind} {namespace}/{name}")
        return True

    def _prepare_patch(self, desired: Dict[str, Any], observed: Dict[str, Any]) -> Dict[str, Any]:
        return desired

    async def reconcile(self, namespace: str, name: str,
                        desired: Optional[Dict[str, Any]]) -> ReconcileResult:
        """Make the resource match ``desired``; ``None`` means it must not exist."""
        observed = await self.get(namespace, name)
        if desired is None:
            if observed is None:
                return ReconcileResult.noop(self.kind, name)
            await self.delete(namespace, name)
            return ReconcileResult(self.kind, name, Operation.DELETED, None, observed)
        if observed is None:
            created = await self.create(namespace, desired)
            return ReconcileResult(self.kind, name, Operation.CREATED, desired, created)
        body = self._prepare_patch(desired, observed)
        if not needs_patch(body, observed):
            return ReconcileResult.noop(self.kind, name, observed)
        patched = await self.patch(namespace, name, body)
        return ReconcileResult(self.kind, name, Operation.PATCHED, body, patched)

    async def _wait_for(self, namespace: str, name: str, condition: str, predicate,
                        timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            resource = await self.get(namespace, name)
            if resource is not None and predicate(resource):
                return resource
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(self.kind, namespace, name, condition, timeout)
            await asyncio.sleep(self.poll_interval)


class WorkloadOperator(KubernetesResourceOperator):
    """StatefulSets and Deployments, whose replica count is driven by explicit scale steps."""

    @staticmethod
    def replicas(resource: Optional[Dict[str, Any]]) -> Optional[int]:
        if resource is None:
            return None
        return (resource.get('spec') or {}).get('replicas', 1)

    def _prepare_patch(self, desired: Dict[str, Any], observed: Dict[str, Any]) -> Dict[str, Any]:
        # replicas only change through scale_down/scale_up
        body = dict(desired)
        body['spec'] = dict(desired.get('spec') or {})
        body['spec']['replicas'] = self.replicas(observed)
        return body

    async def _scale(self, namespace: str, name: str, replicas: int) -> None:
        await self._call('patch', name, namespace, {'spec': {'replicas': replicas}}, subresource='_scale')

    async def scale_down(self, namespace: str, name: str, replicas: int) -> ReconcileResult:
        observed = await self.get(namespace, name)
        current = self.replicas(observed)
        if current is None or current <= replicas:
            return ReconcileResult.noop(self.kind, name, observed)
        logger.info(f"Scaling {self.kind} {namespace}/{name} down from {current} to {replicas}")
        await self._scale(namespace, name, replicas)
        return ReconcileResult(self.kind, name, Operation.PATCHED, {'spec': {'replicas': replicas}}, observed)

    async def scale_up(self, namespace: str, name: str, replicas: int) -> ReconcileResult:
        observed = await self.get(namespace, name)
        current = self.replicas(observed)
        if current is None or current >= replicas:
            return ReconcileResult.noop(self.kind, name, observed)
        logger.info(f"Scaling {self.kind} {namespace}/{name} up from {current} to {replicas}")
        await self._scale(namespace, name, replicas)
        return ReconcileResult(self.kind, name, Operation.PATCHED, {'spec': {'replicas': replicas}}, observed)

    async def wait_for_observed(self, namespace: str, name: str, timeout: float) -> Dict[str, Any]:
        def observed(resource):
            generation = (resource.get('metadata') or {}).get('generation') or 0
            return ((resource.get('status') or {}).get('observedGeneration') or 0) >= generation
        return await self._wait_for(namespace, name, 'observed', observed, timeout)

    async def readiness(self, namespace: str, name: str, timeout: float) -> Dict[str, Any]:
        def ready(resource):
            wanted = self.replicas(resource) or 0
            return ((resource.get('status') or {}).get('readyReplicas') or 0) >= wanted
        return await self._wait_for(namespace, name, 'ready', ready, timeout)


class PodOperator(KubernetesResourceOperator):

    async def restart(self, namespace: str, name: str, timeout: float) -> Dict[str, Any]:
        """Delete the pod and wait until its controller has recreated it and it is ready."""
        observed = await self.get(namespace, name)
        old_uid = ((observed or {}).get('metadata') or {}).get('uid')
        await self.delete(namespace, name)

        def recreated_and_ready(pod):
            return pod['metadata'].get('uid') != old_uid and _is_ready(pod)
        return await self._wait_for(namespace, name, 'ready after restart', recreated_and_ready, timeout)


class CustomResourceOperator:
    """Reads the assembly descriptors and writes their status subresource."""

    def __init__(self, api, kind: str, plural: str, group: str = API_GROUP, version: str = API_VERSION):
        self.api = api
        self.kind = kind
        self.plural = plural
        self.group = group
        self.version = version

    async def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(
                self.api.get_namespaced_custom_object,
                group=self.group, version=self.version, namespace=namespace, plural=self.plural, name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def list(self, namespace: str, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        result = await asyncio.to_thread(
            self.api.list_namespaced_custom_object,
            group=self.group, version=self.version, namespace=namespace, plural=self.plural,
            label_selector=selector or '',
        )
        return result.get('items', [])

    async def update_status(self, namespace: str, name: str, status: Dict[str, Any]) -> None:
        await asyncio.to_thread(
            self.api.patch_namespaced_custom_object_status,
            group=self.group, version=self.version, namespace=namespace, plural=self.plural, name=name,
            body={'status': status},
        )


class ResourceOperatorSupplier:
    """One operator per dependent kind, built from the Kubernetes API clients."""

    def __init__(self, core_api, apps_api, policy_api, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.service_accounts = KubernetesResourceOperator(core_api, 'service_account', 'ServiceAccount')
        self.services = KubernetesResourceOperator(core_api, 'service', 'Service')
        self.config_maps = KubernetesResourceOperator(core_api, 'config_map', 'ConfigMap')
        self.secrets = KubernetesResourceOperator(core_api, 'secret', 'Secret')
        self.pdbs = KubernetesResourceOperator(policy_api, 'pod_disruption_budget', 'PodDisruptionBudget')
        self.statefulsets = WorkloadOperator(apps_api, 'stateful_set', 'StatefulSet', poll_interval)
        self.deployments = WorkloadOperator(apps_api, 'deployment', 'Deployment', poll_interval)
        self.pods = PodOperator(core_api, 'pod', 'Pod', poll_interval)

    @classmethod
    def from_clients(cls) -> 'ResourceOperatorSupplier':
        return cls(client.CoreV1Api(), client.AppsV1Api(), client.PolicyV1Api())

    def workloads(self) -> Dict[str, WorkloadOperator]:
        return {'StatefulSet': self.statefulsets, 'Deployment': self.deployments}

    def in_teardown_order(self) -> List[KubernetesResourceOperator]:
        return [self.statefulsets, self.deployments, self.pdbs, self.config_maps, self.secrets,
                self.services, self.service_accounts]
