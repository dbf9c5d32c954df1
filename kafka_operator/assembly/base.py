"""
Reconciliation loop shared by all assembly kinds.

A pass for ``kind``/``namespace``/``name`` runs under the named lock
``lock::<namespace>::<kind>::<name>``, so two passes for the same resource never
overlap while passes for different resources run concurrently. A pass that
cannot get the lock in time is abandoned; the periodic pass picks it up again.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type

from .. import naming
from ..config import OperatorConfig
from ..errors import InvalidSpecError, LockTimeoutError, OperatorError
from ..lock import LockManager, lock_name
from ..metrics import METRICS
from ..model import SpecModel, parse_spec
from ..reconciler import ResourceReconciler
from ..resources import CustomResourceOperator, ReconcileResult, ResourceOperatorSupplier, WorkloadOperator

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)


@dataclass(frozen=True)
class Reconciliation:
    trigger: str
    kind: str
    namespace: str
    name: str
    id: int = field(default_factory=lambda: next(_sequence))

    def __str__(self) -> str:
        return f'Reconciliation #{self.id}({self.trigger}) {self.kind}({self.namespace}/{self.name})'


class ReconciliationLogger(logging.LoggerAdapter):
    """Prefixes every message with the reconciliation it belongs to."""

    def __init__(self, logger: logging.Logger, reconciliation: Reconciliation):
        super().__init__(logger, {'reconciliation': reconciliation})

    def process(self, msg, kwargs):
        return f"{self.extra['reconciliation']}: {msg}", kwargs


@dataclass
class ReconcileOutcome:
    kind: str
    namespace: str
    name: str
    success: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    results: List[ReconcileResult] = field(default_factory=list)

    @classmethod
    def failed(cls, reconciliation: Reconciliation, error: Exception) -> 'ReconcileOutcome':
        return cls(reconciliation.kind, reconciliation.namespace, reconciliation.name, False,
                   getattr(error, 'reason', type(error).__name__), str(error))


class AbstractAssemblyOperator:
    """Base class for the operators of each assembly kind.

    Subclasses set ``kind``, ``plural`` and ``spec_type`` and implement
    ``create_or_update``. Deletion tears down every resource labelled with the
    assembly, which is enough for all kinds.
    """

    kind: str = ''
    plural: str = ''
    spec_type: Type[SpecModel] = SpecModel

    def __init__(self, ops: ResourceOperatorSupplier, custom: CustomResourceOperator,
                 config: OperatorConfig, locks: Optional[LockManager] = None,
                 workers: Optional[asyncio.Semaphore] = None):
        self.ops = ops
        self.custom = custom
        self.config = config
        self.locks = locks or LockManager(config.lock_timeout_seconds)
        # bounds concurrent passes; the controller shares one across all kinds
        self.workers = workers or asyncio.Semaphore(config.max_concurrent_reconciliations)
        self.reconciler = ResourceReconciler(ops, self.kind, config.operation_timeout_seconds)
        # generation of descriptors which failed validation, keyed by (namespace, name)
        self._invalid: Dict[Tuple[str, str], Any] = {}

    async def create_or_update(self, reconciliation: Reconciliation, resource: Dict[str, Any],
                               spec: SpecModel, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        raise NotImplementedError

    async def delete(self, reconciliation: Reconciliation, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        log.info("Resource no longer exists, deleting dependent resources")
        return await self.reconciler.reconcile(reconciliation.namespace, reconciliation.name, None)

    def workload_operators(self) -> List[WorkloadOperator]:
        """Workloads whose cluster label reveals assemblies, even after their descriptor is gone."""
        return list(self.ops.workloads().values())

    async def reconcile_one(self, namespace: str, name: str, trigger: str = 'watch') -> ReconcileOutcome:
        reconciliation = Reconciliation(trigger, self.kind, namespace, name)
        log = ReconciliationLogger(logger, reconciliation)
        async with self.workers:
            start = time.monotonic()
            log.info("Reconciliation is in progress")
            try:
                async with self.locks.acquire(lock_name(self.kind, namespace, name),
                                              self.config.lock_timeout_seconds):
                    outcome = await self._reconcile_locked(reconciliation, log)
            except LockTimeoutError as e:
                log.warning(f"Failed to acquire lock, another reconciliation is still running: {e}")
                outcome = ReconcileOutcome.failed(reconciliation, e)

        METRICS['reconciliations'].labels(kind=self.kind, result='success' if outcome.success else 'failure').inc()
        METRICS['reconciliation_duration'].labels(kind=self.kind).observe(time.monotonic() - start)
        if outcome.success:
            log.info("Reconciliation completed successfully")
        else:
            log.warning(f"Reconciliation failed: {outcome.reason}: {outcome.message}")
        return outcome

    async def _reconcile_locked(self, reconciliation: Reconciliation,
                                log: logging.LoggerAdapter) -> ReconcileOutcome:
        namespace, name = reconciliation.namespace, reconciliation.name
        key = (namespace, name)
        try:
            resource = await self.custom.get(namespace, name)
            if resource is None:
                self._invalid.pop(key, None)
                results = await self.delete(reconciliation, log)
                return ReconcileOutcome(self.kind, namespace, name, True, results=results)
        except OperatorError as e:
            return ReconcileOutcome.failed(reconciliation, e)
        except Exception as e:
            log.error(f"Unexpected error while deleting: {e}")
            return ReconcileOutcome.failed(reconciliation, e)

        generation = resource['metadata'].get('generation')
        if key in self._invalid and self._invalid[key] == generation:
            log.debug(f"Skipping generation {generation}, it failed validation before")
            return ReconcileOutcome(self.kind, namespace, name, False, InvalidSpecError.reason,
                                    'spec is invalid and has not changed since')

        try:
            spec = parse_spec(resource, self.spec_type)
            results = await self.create_or_update(reconciliation, resource, spec, log)
        except InvalidSpecError as e:
            self._invalid[key] = generation
            outcome = ReconcileOutcome.failed(reconciliation, e)
        except OperatorError as e:
            outcome = ReconcileOutcome.failed(reconciliation, e)
        except Exception as e:
            log.error(f"Unexpected error: {e}")
            outcome = ReconcileOutcome.failed(reconciliation, e)
        else:
            self._invalid.pop(key, None)
            outcome = ReconcileOutcome(self.kind, namespace, name, True, results=results)

        await self.update_status(reconciliation, generation, outcome, log)
        return outcome

    async def update_status(self, reconciliation: Reconciliation, generation: Optional[int],
                            outcome: ReconcileOutcome, log: logging.LoggerAdapter) -> None:
        """Publish the Ready condition of the pass on the custom resource."""
        if outcome.success:
            condition = {'type': 'Ready', 'status': 'True', 'reason': 'ReconciliationSucceeded',
                         'message': f'{self.kind} is ready'}
        else:
            condition = {'type': 'NotReady', 'status': 'True', 'reason': outcome.reason,
                         'message': outcome.message}
        condition['lastTransitionTime'] = datetime.now(timezone.utc).isoformat()
        status = {'conditions': [condition], 'observedGeneration': generation}
        try:
            await self.custom.update_status(reconciliation.namespace, reconciliation.name, status)
            log.debug(f"Updated status: {condition['type']} - {condition['reason']}")
        except Exception as e:
            log.error(f"Failed to update status: {e}")

    async def assembly_names(self, namespace: str) -> List[str]:
        """Names of descriptors plus names of clusters which still own workloads."""
        names = {r['metadata']['name'] for r in await self.custom.list(namespace, self.config.label_selector)}
        for ops in self.workload_operators():
            for resource in await ops.list(namespace, naming.selector(self.kind)):
                cluster = naming.cluster_of(resource)
                if cluster:
                    names.add(cluster)
        return sorted(names)

    async def reconcile_all(self, namespace: str, trigger: str = 'timer') -> List[ReconcileOutcome]:
        names = await self.assembly_names(namespace)
        logger.info(f"Reconciling {len(names)} {self.kind} resources in {namespace}")
        return list(await asyncio.gather(*(self.reconcile_one(namespace, n, trigger) for n in names)))
