"""
Diff-and-apply of the dependent resources of one assembly component.

The steps always run in the same order:

    service account -> services -> config maps and secrets -> disruption budget
    -> scale down -> workload -> rolling restart -> scale up
    -> observed generation -> readiness -> connectors

A failing step aborts the remaining ones. Steps already applied are left in
place, the next pass converges from wherever this one stopped.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import naming
from .errors import OperatorError, ResourceApplyError
from .resources import KubernetesResourceOperator, Operation, ReconcileResult, ResourceOperatorSupplier

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[Any]]


@dataclass
class DesiredState:
    """Everything one component (e.g. the ZooKeeper ensemble) should consist of."""

    name: str
    workload: Dict[str, Any]
    service_account: Optional[Dict[str, Any]] = None
    services: List[Dict[str, Any]] = field(default_factory=list)
    config_maps: List[Dict[str, Any]] = field(default_factory=list)
    secrets: List[Dict[str, Any]] = field(default_factory=list)
    pdb: Optional[Dict[str, Any]] = None
    rolling: Optional[Hook] = None
    connectors: Optional[Hook] = None

    @property
    def workload_kind(self) -> str:
        return self.workload['kind']

    @property
    def replicas(self) -> int:
        return self.workload['spec']['replicas']


class ResourceReconciler:

    def __init__(self, ops: ResourceOperatorSupplier, kind: str, operation_timeout: float):
        self.ops = ops
        self.kind = kind
        self.operation_timeout = operation_timeout

    async def reconcile(self, namespace: str, cluster: str,
                        desired: Optional[DesiredState]) -> List[ReconcileResult]:
        if desired is None:
            return await self.teardown(namespace, cluster)

        results: List[ReconcileResult] = []
        workload_ops = self.ops.workloads()[desired.workload_kind]

        async def step(kind: str, name: str, action: Callable[[], Awaitable[Any]]):
            try:
                result = await action()
            except OperatorError:
                raise
            except Exception as e:
                logger.error(f"Failed to reconcile {kind} {namespace}/{name}: {e}")
                raise ResourceApplyError(kind, namespace, name, e) from e
            if isinstance(result, ReconcileResult):
                results.append(result)
            elif isinstance(result, list):
                results.extend(r for r in result if isinstance(r, ReconcileResult))
            return result

        await step('ServiceAccount', desired.name,
                   lambda: self.ops.service_accounts.reconcile(namespace, desired.name, desired.service_account))
        await self._apply_all(step, namespace, cluster, desired.name, self.ops.services, desired.services)
        await self._apply_all(step, namespace, cluster, desired.name, self.ops.config_maps, desired.config_maps)
        await self._apply_all(step, namespace, cluster, desired.name, self.ops.secrets, desired.secrets)
        await step('PodDisruptionBudget', desired.name,
                   lambda: self.ops.pdbs.reconcile(namespace, desired.name, desired.pdb))

        await step(desired.workload_kind, desired.name,
                   lambda: workload_ops.scale_down(namespace, desired.name, desired.replicas))
        await step(desired.workload_kind, desired.name,
                   lambda: workload_ops.reconcile(namespace, desired.name, desired.workload))
        if desired.rolling is not None:
            await step('Pod', desired.name, desired.rolling)
        await step(desired.workload_kind, desired.name,
                   lambda: workload_ops.scale_up(namespace, desired.name, desired.replicas))
        await step(desired.workload_kind, desired.name,
                   lambda: workload_ops.wait_for_observed(namespace, desired.name, self.operation_timeout))
        await step(desired.workload_kind, desired.name,
                   lambda: workload_ops.readiness(namespace, desired.name, self.operation_timeout))
        if desired.connectors is not None:
            await step('KafkaConnector', desired.name, desired.connectors)

        changed = [r for r in results if r.operation is not Operation.NOOP]
        logger.debug(f"{desired.name} in {namespace}: {len(changed)} of {len(results)} resources changed")
        return results

    async def _apply_all(self, step, namespace: str, cluster: str, component: str,
                         ops: KubernetesResourceOperator, desired: List[Dict[str, Any]]) -> None:
        wanted = set()
        for body in desired:
            name = body['metadata']['name']
            wanted.add(name)
            await step(ops.kind, name, lambda name=name, body=body: ops.reconcile(namespace, name, body))

        # resources of this component which are no longer wanted, e.g. after disabling a listener
        selector = naming.selector(self.kind, cluster, f'{naming.NAME_LABEL}={component}')
        live = await step(ops.kind, component, lambda: ops.list(namespace, selector))
        for resource in live:
            name = resource['metadata']['name']
            if name not in wanted:
                await step(ops.kind, name, lambda name=name: ops.reconcile(namespace, name, None))

    async def teardown(self, namespace: str, cluster: str) -> List[ReconcileResult]:
        """Delete every dependent resource labelled with the cluster, workloads first."""
        results = []
        selector = naming.selector(self.kind, cluster)
        for ops in self.ops.in_teardown_order():
            try:
                live = await ops.list(namespace, selector)
                for resource in live:
                    name = resource['metadata']['name']
                    if await ops.delete(namespace, name):
                        results.append(ReconcileResult(ops.kind, name, Operation.DELETED, None, resource))
            except OperatorError:
                raise
            except Exception as e:
                logger.error(f"Failed to delete {ops.kind} resources of {namespace}/{cluster}: {e}")
                raise ResourceApplyError(ops.kind, namespace, cluster, e) from e
        logger.info(f"Deleted {len(results)} resources of {self.kind} {namespace}/{cluster}")
        return results
