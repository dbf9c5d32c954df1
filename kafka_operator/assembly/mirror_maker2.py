"""
MirrorMaker 2 assembly: a Kafka Connect deployment running the mirror connectors.

For every mirror ``source -> target`` up to three connectors are created on the
Connect cluster, named ``<source>-><target>.Mirror{Source,Checkpoint,Heartbeat}Connector``.
"""

import logging
from typing import Any, Dict, List, Optional

from .. import naming, templates
from ..connect import REST_API_PORT, BackOff
from ..connectors import ConnectorDescriptor, ConnectorReconciler
from ..errors import InvalidSpecError
from ..model import KafkaMirrorMaker2Spec, MirrorMaker2ClusterSpec, MirrorSpec
from ..reconciler import DesiredState
from ..resources import ReconcileResult
from .base import AbstractAssemblyOperator, Reconciliation

logger = logging.getLogger(__name__)

KIND = 'KafkaMirrorMaker2'

CONNECTOR_PACKAGE = 'org.apache.kafka.connect.mirror'
SOURCE_CONNECTOR_SUFFIX = '.MirrorSourceConnector'
CHECKPOINT_CONNECTOR_SUFFIX = '.MirrorCheckpointConnector'
HEARTBEAT_CONNECTOR_SUFFIX = '.MirrorHeartbeatConnector'

SOURCE_CLUSTER_PREFIX = 'source.cluster.'
TARGET_CLUSTER_PREFIX = 'target.cluster.'

STORE_LOCATION_ROOT = '/tmp/kafka/clusters/'
TRUSTSTORE_SUFFIX = '.truststore.p12'
KEYSTORE_SUFFIX = '.keystore.p12'
CONNECTORS_CONFIG_FILE = '/tmp/kafka-mirrormaker2-connector.properties'

CONFIG_DIR = '/opt/kafka/custom-config'
CERTS_ROOT = '/opt/kafka/mm2-certs'

SASL_MECHANISMS = {'plain': 'PLAIN', 'scram-sha-512': 'SCRAM-SHA-512'}
LOGIN_MODULES = {
    'plain': 'org.apache.kafka.common.security.plain.PlainLoginModule',
    'scram-sha-512': 'org.apache.kafka.common.security.scram.ScramLoginModule',
}


def _file_reference(key: str) -> str:
    return f'${{file:{CONNECTORS_CONFIG_FILE}:{key}}}'


def cluster_config(cluster: MirrorMaker2ClusterSpec, prefix: str) -> Dict[str, Any]:
    """Client settings for one side of a mirror, every key prefixed."""
    config: Dict[str, Any] = {
        prefix + 'alias': cluster.alias,
        prefix + 'bootstrap.servers': cluster.bootstrap_servers,
    }

    security_protocol = None
    if cluster.tls is not None:
        security_protocol = 'SSL'
        config[prefix + 'ssl.truststore.type'] = 'PKCS12'
        config[prefix + 'ssl.truststore.location'] = STORE_LOCATION_ROOT + cluster.alias + TRUSTSTORE_SUFFIX
        config[prefix + 'ssl.truststore.password'] = _file_reference('ssl.truststore.password')

    auth = cluster.authentication
    if auth is not None:
        if auth.type == 'tls':
            config[prefix + 'ssl.keystore.type'] = 'PKCS12'
            config[prefix + 'ssl.keystore.location'] = STORE_LOCATION_ROOT + cluster.alias + KEYSTORE_SUFFIX
            config[prefix + 'ssl.keystore.password'] = _file_reference('ssl.keystore.password')
        else:
            security_protocol = 'SASL_SSL' if cluster.tls is not None else 'SASL_PLAINTEXT'
            password = _file_reference(f'{cluster.alias}.sasl.password')
            config[prefix + 'sasl.mechanism'] = SASL_MECHANISMS[auth.type]
            config[prefix + 'sasl.jaas.config'] = (
                f'{LOGIN_MODULES[auth.type]} required username="{auth.username}" password="{password}";'
            )

    if security_protocol is not None:
        config[prefix + 'security.protocol'] = security_protocol

    config.update({prefix + k: v for k, v in cluster.config.items()})
    return config


def mirror_connectors(spec: KafkaMirrorMaker2Spec, mirror: MirrorSpec) -> List[ConnectorDescriptor]:
    if mirror.target_cluster is None:
        raise InvalidSpecError('targetCluster property is required')
    if mirror.source_cluster is None:
        raise InvalidSpecError('sourceCluster property is required')
    target = spec.cluster(mirror.target_cluster)
    if target is None:
        raise InvalidSpecError(f"targetCluster with alias {mirror.target_cluster} cannot be found "
                               f"in the list of clusters at spec.clusters")
    source = spec.cluster(mirror.source_cluster)
    if source is None:
        raise InvalidSpecError(f"sourceCluster with alias {mirror.source_cluster} cannot be found "
                               f"in the list of clusters at spec.clusters")

    connectors = []
    for suffix, connector in ((SOURCE_CONNECTOR_SUFFIX, mirror.source_connector),
                              (CHECKPOINT_CONNECTOR_SUFFIX, mirror.checkpoint_connector),
                              (HEARTBEAT_CONNECTOR_SUFFIX, mirror.heartbeat_connector)):
        if connector is None:
            continue
        config = dict(connector.config)
        config.update(cluster_config(target, TARGET_CLUSTER_PREFIX))
        config.update(cluster_config(source, SOURCE_CLUSTER_PREFIX))
        if mirror.topics_pattern is not None:
            config['topics'] = mirror.topics_pattern
        if mirror.topics_exclude_pattern is not None:
            config['topics.exclude'] = mirror.topics_exclude_pattern
        if mirror.groups_pattern is not None:
            config['groups'] = mirror.groups_pattern
        if mirror.groups_exclude_pattern is not None:
            config['groups.exclude'] = mirror.groups_exclude_pattern
        connectors.append(ConnectorDescriptor(
            name=f'{mirror.source_cluster}->{mirror.target_cluster}{suffix}',
            class_name=CONNECTOR_PACKAGE + suffix,
            config=config,
            pause=connector.pause,
            tasks_max=connector.tasks_max,
        ))
    return connectors


def connector_descriptors(spec: KafkaMirrorMaker2Spec) -> List[ConnectorDescriptor]:
    """All connectors the mirrors of ``spec`` ask for, in mirror order."""
    result = []
    for mirror in spec.mirrors:
        result.extend(mirror_connectors(spec, mirror))
    return result


class KafkaMirrorMaker2AssemblyOperator(AbstractAssemblyOperator):
    kind = KIND
    plural = 'kafkamirrormaker2s'
    spec_type = KafkaMirrorMaker2Spec

    def __init__(self, *args, connector_reconciler: Optional[ConnectorReconciler] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.connector_reconciler = connector_reconciler or ConnectorReconciler(
            BackOff.from_config(self.config.connect_backoff))

    async def create_or_update(self, reconciliation: Reconciliation, resource: Dict[str, Any],
                               spec: KafkaMirrorMaker2Spec, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        namespace, cluster = reconciliation.namespace, reconciliation.name
        # raises InvalidSpecError before anything is applied
        connectors = connector_descriptors(spec)
        desired = self.desired(namespace, cluster, spec)

        host = naming.qualified_service_name(naming.mirror_maker2_api_service_name(cluster), namespace,
                                             self.config.dns_domain)

        async def reconcile_connectors():
            log.debug(f"Reconciling {len(connectors)} connectors on {host}")
            return await self.connector_reconciler.reconcile_connectors(host, REST_API_PORT, connectors)

        if spec.replicas > 0:
            desired.connectors = reconcile_connectors
        return await self.reconciler.reconcile(namespace, cluster, desired)

    def connect_config(self, spec: KafkaMirrorMaker2Spec) -> Dict[str, Any]:
        connect_cluster = spec.cluster(spec.connect_cluster)
        config = {
            'group.id': 'mirrormaker2-cluster',
            'offset.storage.topic': 'mirrormaker2-cluster-offsets',
            'config.storage.topic': 'mirrormaker2-cluster-configs',
            'status.storage.topic': 'mirrormaker2-cluster-status',
            'key.converter': 'org.apache.kafka.connect.converters.ByteArrayConverter',
            'value.converter': 'org.apache.kafka.connect.converters.ByteArrayConverter',
            'config.providers': 'file',
            'config.providers.file.class': 'org.apache.kafka.common.config.provider.FileConfigProvider',
        }
        config.update(spec.config)
        config.update({k: v for k, v in cluster_config(connect_cluster, '').items() if k != 'alias'})
        config['listeners'] = f'http://:{REST_API_PORT}'
        return config

    def desired(self, namespace: str, cluster: str, spec: KafkaMirrorMaker2Spec) -> DesiredState:
        name = naming.mirror_maker2_name(cluster)
        labels = naming.labels(self.kind, cluster, name=name)
        selector = templates.selector_labels(cluster, name)
        config_map_name = f'{name}-config'

        env = [templates.env_var('KAFKA_CONNECT_CONFIGURATION_FILE', f'{CONFIG_DIR}/connect.properties'),
               templates.env_var('KAFKA_CONNECTORS_CONFIGURATION_FILE', CONNECTORS_CONFIG_FILE)]
        volumes = [templates.config_volume('config', config_map_name)]
        mounts = [{'name': 'config', 'mountPath': CONFIG_DIR}]
        for c in spec.clusters:
            auth = c.authentication
            if auth is not None and auth.password_secret is not None:
                env.append({
                    'name': f'KAFKA_MIRRORMAKER_2_SASL_PASSWORD_{c.alias.upper().replace("-", "_")}',
                    'valueFrom': {'secretKeyRef': {'name': auth.password_secret.secret_name,
                                                   'key': auth.password_secret.password}},
                })
            if c.tls is not None:
                for cert in c.tls.trusted_certificates:
                    volume = f'{c.alias}-{cert.secret_name}'.lower()
                    volumes.append(templates.secret_volume(volume, cert.secret_name))
                    mounts.append({'name': volume, 'mountPath': f'{CERTS_ROOT}/{c.alias}/{cert.secret_name}'})

        template = templates.pod_template(
            labels={**spec.template.pod.metadata.labels, **labels},
            annotations=dict(spec.template.pod.metadata.annotations),
            containers=[templates.container(
                'mirrormaker2', spec.image,
                ['sh', '-c', '/opt/kafka/kafka_mirror_maker_2_run.sh'],
                ports=[{'containerPort': REST_API_PORT, 'name': 'rest-api'}],
                env=env, volume_mounts=mounts,
                health_port=REST_API_PORT, http_health_path='/',
            )],
            volumes=volumes,
            service_account_name=name,
        )

        return DesiredState(
            name=name,
            service_account=templates.service_account(name, namespace, labels),
            services=[templates.service(
                naming.mirror_maker2_api_service_name(cluster), namespace, labels, selector,
                [{'port': REST_API_PORT, 'targetPort': REST_API_PORT, 'name': 'rest-api'}])],
            config_maps=[templates.config_map(config_map_name, namespace, labels, {
                'connect.properties': templates.properties(self.connect_config(spec),
                                                           'Managed by the kafka-assembly-operator'),
            })],
            pdb=templates.pod_disruption_budget(name, namespace, labels, selector,
                                                spec.template.pod_disruption_budget.max_unavailable),
            workload=templates.deployment(name, namespace, labels, spec.replicas, selector, template),
        )
