"""
Kafka assembly: certificate authorities, the ZooKeeper ensemble and the brokers.

Each pass first settles both CAs (create, load, renew), then reconciles
ZooKeeper and finally Kafka. Both StatefulSets use the ``OnDelete`` update
strategy; pods are restarted by the operator itself once the rolling update
decision procedure allows it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from .. import naming, rolling, templates
from ..certs import CaRole, CertificateAuthority, Renewed, certificates_secret, kafka_broker_subject_fn, \
    zookeeper_node_subject_fn
from ..metrics import METRICS
from ..model import KafkaSpec, MaintenanceWindow
from ..reconciler import DesiredState
from ..resources import ReconcileResult
from ..rolling import CaGenerationState, PodState, RollAction
from .base import AbstractAssemblyOperator, Reconciliation

logger = logging.getLogger(__name__)

KIND = 'Kafka'

ZOOKEEPER_CLIENT_PORT = 2181
ZOOKEEPER_PEER_PORT = 2888
ZOOKEEPER_ELECTION_PORT = 3888
REPLICATION_PORT = 9091
PLAIN_PORT = 9092
TLS_PORT = 9093
EXTERNAL_PORT = 9094

KAFKA_CONFIG_DIR = '/opt/kafka/custom-config'
CERTS_DIR = '/opt/kafka/certs'
CLUSTER_CA_DIR = '/opt/kafka/cluster-ca-certs'
CLIENTS_CA_DIR = '/opt/kafka/clients-ca-certs'

# Kafka settings managed by the operator, user values for these are ignored
OPERATOR_OWNED_KAFKA_CONFIG = (
    'listeners', 'advertised.listeners', 'listener.security.protocol.map', 'inter.broker.listener.name',
    'zookeeper.connect', 'broker.id', 'log.dirs',
)

EXTERNAL_SERVICE_TYPES = {'loadbalancer': 'LoadBalancer', 'nodeport': 'NodePort'}


def _clock() -> datetime:
    return datetime.now(timezone.utc)


class KafkaAssemblyOperator(AbstractAssemblyOperator):
    kind = KIND
    plural = 'kafkas'
    spec_type = KafkaSpec

    def __init__(self, *args, clock: Callable[[], datetime] = _clock, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock

    async def create_or_update(self, reconciliation: Reconciliation, resource: Dict[str, Any],
                               spec: KafkaSpec, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        namespace, cluster = reconciliation.namespace, reconciliation.name
        now = self.clock()

        results: List[ReconcileResult] = []
        cluster_ca = await self._reconcile_ca(namespace, cluster, CaRole.CLUSTER, spec, now, results, log)
        clients_ca = await self._reconcile_ca(namespace, cluster, CaRole.CLIENTS, spec, now, results, log)
        cluster_state = CaGenerationState.of(cluster_ca)
        clients_state = CaGenerationState.of(clients_ca)

        zookeeper = await self.zookeeper_desired(namespace, cluster, spec, cluster_ca, now, log)
        zookeeper.rolling = self._rolling(namespace, cluster, 'zookeeper', zookeeper, [cluster_state],
                                          spec.maintenance_time_windows, log)
        results += await self.reconciler.reconcile(namespace, cluster, zookeeper)

        kafka = await self.kafka_desired(namespace, cluster, spec, cluster_ca, clients_ca, now, log)
        kafka.rolling = self._rolling(namespace, cluster, 'kafka', kafka, [cluster_state, clients_state],
                                      spec.maintenance_time_windows, log)
        results += await self.reconciler.reconcile(namespace, cluster, kafka)
        return results

    async def _reconcile_ca(self, namespace: str, cluster: str, role: CaRole, spec: KafkaSpec, now: datetime,
                            results: List[ReconcileResult], log: logging.LoggerAdapter) -> CertificateAuthority:
        ca_spec = spec.cluster_ca if role is CaRole.CLUSTER else spec.clients_ca
        cert_name = naming.ca_cert_secret_name(cluster, role.value)
        key_name = naming.ca_key_secret_name(cluster, role.value)
        ca = CertificateAuthority.load_or_generate(
            role, cluster,
            await self.ops.secrets.get(namespace, cert_name),
            await self.ops.secrets.get(namespace, key_name),
            validity_days=ca_spec.validity_days,
            renewal_days=ca_spec.renewal_days,
            generate=ca_spec.generate_certificate_authority,
            now=now,
        )
        outcome = ca.renew_if_needed(now)
        if isinstance(outcome, Renewed):
            METRICS['ca_renewals'].labels(role=role.value).inc()
            log.info(f"{role.value} CA renewed, generation is now {outcome.generation}")

        if ca.material_changed:
            labels = naming.labels(self.kind, cluster, name=cluster)
            results.append(await self.ops.secrets.reconcile(namespace, cert_name, ca.cert_secret(namespace, labels)))
            results.append(await self.ops.secrets.reconcile(namespace, key_name, ca.key_secret(namespace, labels)))
        return ca

    def _rolling(self, namespace: str, cluster: str, component: str, desired: DesiredState,
                 cas: Sequence[CaGenerationState], windows: Sequence[MaintenanceWindow], log: logging.LoggerAdapter):
        target_revision = desired.workload['spec']['template']['metadata']['annotations'][naming.ANNO_REVISION]

        async def roll() -> Dict[str, rolling.RollDecision]:
            selector = naming.selector(self.kind, cluster, f'{naming.NAME_LABEL}={desired.name}')
            pods = [PodState.from_manifest(p) for p in await self.ops.pods.list(namespace, selector)]
            decisions = rolling.plan(pods, cas, windows, self.clock(), target_revision)
            deferred = sorted(n for n, d in decisions.items() if d.action is RollAction.DEFER)
            METRICS['deferred_restarts'].labels(namespace=namespace, cluster=cluster,
                                                 component=component).set(len(deferred))
            if deferred:
                log.info(f"Restart of {deferred} deferred until the next maintenance time window")
            for pod in rolling.pods_to_roll(decisions):
                log.info(f"Rolling pod {pod}: {decisions[pod].reason}")
                await self.ops.pods.restart(namespace, pod, self.config.operation_timeout_seconds)
            return decisions

        return roll

    def _common(self, cluster: str, component: str):
        labels = naming.labels(self.kind, cluster, name=component)
        return labels, templates.selector_labels(cluster, component)

    async def zookeeper_desired(self, namespace: str, cluster: str, spec: KafkaSpec,
                                cluster_ca: CertificateAuthority, now: datetime,
                                log: logging.LoggerAdapter) -> DesiredState:
        zk = spec.zookeeper
        name = naming.zookeeper_statefulset_name(cluster)
        labels, selector = self._common(cluster, name)
        headless = naming.zookeeper_headless_service_name(cluster)
        domain = self.config.dns_domain

        servers = {
            f'server.{i + 1}': f'{naming.zookeeper_pod_name(cluster, i)}.{headless}.{namespace}.svc.{domain}:'
                               f'{ZOOKEEPER_PEER_PORT}:{ZOOKEEPER_ELECTION_PORT}'
            for i in range(zk.replicas)
        }
        zk_config = dict(zk.config)
        zk_config.update({
            'dataDir': '/var/lib/zookeeper/data',
            'clientPort': ZOOKEEPER_CLIENT_PORT,
            'tickTime': zk_config.get('tickTime', 2000),
            'initLimit': zk_config.get('initLimit', 5),
            'syncLimit': zk_config.get('syncLimit', 2),
        })
        zk_config.update(servers)

        nodes_secret_name = naming.zookeeper_nodes_secret_name(cluster)
        certs = cluster_ca.issue_leaf_certificates(
            zk.replicas, zookeeper_node_subject_fn(cluster, namespace, domain),
            await self.ops.secrets.get(namespace, nodes_secret_name),
            lambda i: naming.zookeeper_pod_name(cluster, i), now)

        config_map_name = naming.zookeeper_config_map_name(cluster)
        template = templates.pod_template(
            labels=labels,
            annotations={
                **zk.template.pod.metadata.annotations,
                naming.ANNO_CLUSTER_CA_CERT_GENERATION: str(cluster_ca.generation),
            },
            containers=[templates.container(
                'zookeeper', zk.image,
                ['sh', '-c', 'echo $(( ${HOSTNAME##*-} + 1 )) > /var/lib/zookeeper/data/myid && '
                             'exec /opt/kafka/bin/zookeeper-server-start.sh '
                             f'{KAFKA_CONFIG_DIR}/zookeeper.properties'],
                ports=[{'containerPort': ZOOKEEPER_CLIENT_PORT, 'name': 'clients'},
                       {'containerPort': ZOOKEEPER_PEER_PORT, 'name': 'clustering'},
                       {'containerPort': ZOOKEEPER_ELECTION_PORT, 'name': 'leader-election'}],
                volume_mounts=[{'name': 'config', 'mountPath': KAFKA_CONFIG_DIR},
                               {'name': 'certs', 'mountPath': CERTS_DIR},
                               {'name': 'data', 'mountPath': '/var/lib/zookeeper'}],
                health_port=ZOOKEEPER_CLIENT_PORT,
            )],
            volumes=[templates.config_volume('config', config_map_name),
                     templates.secret_volume('certs', nodes_secret_name),
                     {'name': 'data', 'emptyDir': {}}],
            service_account_name=name,
        )
        template['metadata']['labels'] = {**zk.template.pod.metadata.labels, **labels}
        templates.with_revision(template)

        client_ports = [{'port': ZOOKEEPER_CLIENT_PORT, 'targetPort': ZOOKEEPER_CLIENT_PORT, 'name': 'clients'}]
        return DesiredState(
            name=name,
            service_account=templates.service_account(name, namespace, labels),
            services=[
                templates.service(naming.zookeeper_service_name(cluster), namespace, labels, selector,
                                  client_ports),
                templates.service(headless, namespace, labels, selector, client_ports + [
                    {'port': ZOOKEEPER_PEER_PORT, 'targetPort': ZOOKEEPER_PEER_PORT, 'name': 'clustering'},
                    {'port': ZOOKEEPER_ELECTION_PORT, 'targetPort': ZOOKEEPER_ELECTION_PORT,
                     'name': 'leader-election'},
                ], headless=True),
            ],
            config_maps=[templates.config_map(config_map_name, namespace, labels, {
                'zookeeper.properties': templates.properties(zk_config, 'Managed by the kafka-assembly-operator'),
            })],
            secrets=[certificates_secret(nodes_secret_name, namespace, labels, cluster_ca, certs)],
            pdb=templates.pod_disruption_budget(name, namespace, labels, selector,
                                                zk.template.pod_disruption_budget.max_unavailable),
            workload=templates.stateful_set(name, namespace, labels, zk.replicas, headless, selector, template),
        )

    @staticmethod
    def external_addresses(spec: KafkaSpec) -> Dict[int, str]:
        external = spec.kafka.listeners.external
        if external is None:
            return {}
        return {b.broker: b.advertised_host for b in external.brokers}

    def kafka_config(self, namespace: str, cluster: str, spec: KafkaSpec,
                     log: logging.LoggerAdapter) -> Dict[str, Any]:
        listeners = spec.kafka.listeners
        names = [('REPLICATION', REPLICATION_PORT, 'SSL')]
        if listeners.plain:
            names.append(('PLAIN', PLAIN_PORT, 'PLAINTEXT'))
        if listeners.tls:
            names.append(('TLS', TLS_PORT, 'SSL'))
        if listeners.external is not None:
            names.append(('EXTERNAL', EXTERNAL_PORT, 'SSL'))

        ignored = sorted(k for k in spec.kafka.config if k in OPERATOR_OWNED_KAFKA_CONFIG)
        if ignored:
            log.warning(f"Ignoring Kafka configuration options managed by the operator: {ignored}")
        config = {k: v for k, v in spec.kafka.config.items() if k not in OPERATOR_OWNED_KAFKA_CONFIG}

        config.update({
            'zookeeper.connect': f'{naming.zookeeper_service_name(cluster)}:{ZOOKEEPER_CLIENT_PORT}',
            'log.dirs': '/var/lib/kafka/data',
            'listeners': ','.join(f'{n}://0.0.0.0:{p}' for n, p, _ in names),
            'listener.security.protocol.map': ','.join(f'{n}:{proto}' for n, _, proto in names),
            'inter.broker.listener.name': 'REPLICATION',
            'ssl.truststore.type': 'PEM',
            'ssl.truststore.location': f'{CLUSTER_CA_DIR}/ca.crt',
        })
        if listeners.tls:
            config['listener.name.tls.ssl.client.auth'] = 'required'
            config['listener.name.tls.ssl.truststore.location'] = f'{CLIENTS_CA_DIR}/ca.crt'
        return config

    async def kafka_desired(self, namespace: str, cluster: str, spec: KafkaSpec,
                            cluster_ca: CertificateAuthority, clients_ca: CertificateAuthority,
                            now: datetime, log: logging.LoggerAdapter) -> DesiredState:
        kafka = spec.kafka
        name = naming.kafka_statefulset_name(cluster)
        labels, selector = self._common(cluster, name)
        headless = naming.kafka_headless_service_name(cluster)
        external = kafka.listeners.external

        brokers_secret_name = naming.kafka_brokers_secret_name(cluster)
        certs = cluster_ca.issue_leaf_certificates(
            kafka.replicas,
            kafka_broker_subject_fn(cluster, namespace, self.config.dns_domain,
                                    external.bootstrap_address if external else None,
                                    self.external_addresses(spec)),
            await self.ops.secrets.get(namespace, brokers_secret_name),
            lambda i: naming.kafka_pod_name(cluster, i), now)

        ports = [{'port': REPLICATION_PORT, 'targetPort': REPLICATION_PORT, 'name': 'replication'}]
        if kafka.listeners.plain:
            ports.append({'port': PLAIN_PORT, 'targetPort': PLAIN_PORT, 'name': 'plain'})
        if kafka.listeners.tls:
            ports.append({'port': TLS_PORT, 'targetPort': TLS_PORT, 'name': 'tls'})

        services = [
            templates.service(naming.kafka_service_name(cluster), namespace, labels, selector, ports),
            templates.service(headless, namespace, labels, selector, ports, headless=True),
        ]
        if external is not None:
            external_service = templates.service(
                f'{cluster}-kafka-external-bootstrap', namespace, labels, selector,
                [{'port': EXTERNAL_PORT, 'targetPort': EXTERNAL_PORT, 'name': 'external'}])
            external_service['spec']['type'] = EXTERNAL_SERVICE_TYPES.get(external.type, 'ClusterIP')
            services.append(external_service)

        config_map_name = naming.kafka_config_map_name(cluster)
        template = templates.pod_template(
            labels=labels,
            annotations={
                **kafka.template.pod.metadata.annotations,
                naming.ANNO_CLUSTER_CA_CERT_GENERATION: str(cluster_ca.generation),
                naming.ANNO_CLIENTS_CA_CERT_GENERATION: str(clients_ca.generation),
            },
            containers=[templates.container(
                'kafka', kafka.image,
                ['sh', '-c', 'exec /opt/kafka/bin/kafka-server-start.sh '
                             f'{KAFKA_CONFIG_DIR}/server.properties --override broker.id=${{HOSTNAME##*-}}'],
                ports=[{'containerPort': p['port'], 'name': p['name']} for p in ports]
                + ([{'containerPort': EXTERNAL_PORT, 'name': 'external'}] if external is not None else []),
                env=[templates.env_var('KAFKA_HEAP_OPTS', '-Xms1G -Xmx1G')],
                volume_mounts=[{'name': 'config', 'mountPath': KAFKA_CONFIG_DIR},
                               {'name': 'certs', 'mountPath': CERTS_DIR},
                               {'name': 'cluster-ca', 'mountPath': CLUSTER_CA_DIR},
                               {'name': 'clients-ca', 'mountPath': CLIENTS_CA_DIR},
                               {'name': 'data', 'mountPath': '/var/lib/kafka'}],
                health_port=REPLICATION_PORT,
            )],
            volumes=[templates.config_volume('config', config_map_name),
                     templates.secret_volume('certs', brokers_secret_name),
                     templates.secret_volume('cluster-ca', naming.ca_cert_secret_name(cluster, 'cluster')),
                     templates.secret_volume('clients-ca', naming.ca_cert_secret_name(cluster, 'clients')),
                     {'name': 'data', 'emptyDir': {}}],
            service_account_name=name,
        )
        template['metadata']['labels'] = {**kafka.template.pod.metadata.labels, **labels}
        templates.with_revision(template)

        return DesiredState(
            name=name,
            service_account=templates.service_account(name, namespace, labels),
            services=services,
            config_maps=[templates.config_map(config_map_name, namespace, labels, {
                'server.properties': templates.properties(self.kafka_config(namespace, cluster, spec, log),
                                                          'Managed by the kafka-assembly-operator'),
            })],
            secrets=[certificates_secret(brokers_secret_name, namespace, labels, cluster_ca, certs)],
            pdb=templates.pod_disruption_budget(name, namespace, labels, selector,
                                                kafka.template.pod_disruption_budget.max_unavailable),
            workload=templates.stateful_set(name, namespace, labels, kafka.replicas, headless, selector, template),
        )
