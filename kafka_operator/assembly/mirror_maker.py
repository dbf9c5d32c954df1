"""MirrorMaker (version 1) assembly: a single Deployment configured through environment variables."""

import logging
from typing import Any, Dict, List

from .. import naming, templates
from ..model import KafkaMirrorMakerSpec
from ..reconciler import DesiredState
from ..resources import ReconcileResult
from .base import AbstractAssemblyOperator, Reconciliation

logger = logging.getLogger(__name__)

KIND = 'KafkaMirrorMaker'

ENV_PREFIX = 'KAFKA_MIRRORMAKER_'
HEALTH_PORT = 8080


def mirror_maker_env(spec: KafkaMirrorMakerSpec) -> List[Dict[str, Any]]:
    consumer, producer = spec.consumer, spec.producer
    return [
        templates.env_var(ENV_PREFIX + 'BOOTSTRAP_SERVERS_CONSUMER', consumer.bootstrap_servers),
        templates.env_var(ENV_PREFIX + 'GROUPID_CONSUMER', consumer.group_id),
        templates.env_var(ENV_PREFIX + 'CONFIGURATION_CONSUMER', templates.properties(consumer.config).strip()),
        templates.env_var(ENV_PREFIX + 'BOOTSTRAP_SERVERS_PRODUCER', producer.bootstrap_servers),
        templates.env_var(ENV_PREFIX + 'CONFIGURATION_PRODUCER', templates.properties(producer.config).strip()),
        templates.env_var(ENV_PREFIX + 'INCLUDE', spec.include),
    ]


class KafkaMirrorMakerAssemblyOperator(AbstractAssemblyOperator):
    kind = KIND
    plural = 'kafkamirrormakers'
    spec_type = KafkaMirrorMakerSpec

    async def create_or_update(self, reconciliation: Reconciliation, resource: Dict[str, Any],
                               spec: KafkaMirrorMakerSpec, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        log.debug(f"Mirroring topics matching '{spec.include}'")
        desired = self.desired(reconciliation.namespace, reconciliation.name, spec)
        return await self.reconciler.reconcile(reconciliation.namespace, reconciliation.name, desired)

    def desired(self, namespace: str, cluster: str, spec: KafkaMirrorMakerSpec) -> DesiredState:
        name = naming.mirror_maker_name(cluster)
        labels = naming.labels(self.kind, cluster, name=name)
        selector = templates.selector_labels(cluster, name)
        template = templates.pod_template(
            labels={**spec.template.pod.metadata.labels, **labels},
            annotations=dict(spec.template.pod.metadata.annotations),
            containers=[templates.container(
                'mirror-maker', spec.image,
                ['sh', '-c', '/opt/kafka/kafka_mirror_maker_run.sh'],
                ports=[{'containerPort': HEALTH_PORT, 'name': 'healthcheck'}],
                env=mirror_maker_env(spec),
                health_port=HEALTH_PORT,
            )],
            volumes=[],
            service_account_name=name,
        )
        return DesiredState(
            name=name,
            service_account=templates.service_account(name, namespace, labels),
            pdb=templates.pod_disruption_budget(name, namespace, labels, selector,
                                                spec.template.pod_disruption_budget.max_unavailable),
            workload=templates.deployment(name, namespace, labels, spec.replicas, selector, template),
        )
