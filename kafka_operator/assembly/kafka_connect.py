"""
Kafka Connect assembly: a Deployment of Connect workers behind a REST API Service.

Connectors running on the cluster are left to the user; the operator only owns
the workers and their configuration.
"""

import logging
from typing import Any, Dict, List

from .. import naming, templates
from ..connect import REST_API_PORT
from ..model import KafkaConnectSpec
from ..reconciler import DesiredState
from ..resources import ReconcileResult
from .base import AbstractAssemblyOperator, Reconciliation
from .mirror_maker2 import LOGIN_MODULES, SASL_MECHANISMS

logger = logging.getLogger(__name__)

KIND = 'KafkaConnect'

CONFIG_DIR = '/opt/kafka/custom-config'
CERTS_ROOT = '/opt/kafka/connect-certs'
TRUSTSTORE_LOCATION = '/tmp/kafka/cluster.truststore.p12'
KEYSTORE_LOCATION = '/tmp/kafka/cluster.keystore.p12'

PASSWORD_ENV = 'KAFKA_CONNECT_SASL_PASSWORD'
STORE_PASSWORD_ENV = 'CERTS_STORE_PASSWORD'

DEFAULT_CONNECT_CONFIG = {
    'group.id': 'connect-cluster',
    'offset.storage.topic': 'connect-cluster-offsets',
    'config.storage.topic': 'connect-cluster-configs',
    'status.storage.topic': 'connect-cluster-status',
    'key.converter': 'org.apache.kafka.connect.json.JsonConverter',
    'value.converter': 'org.apache.kafka.connect.json.JsonConverter',
}

# worker settings derived from the spec, user values for these are ignored
OPERATOR_OWNED_CONNECT_CONFIG = (
    'bootstrap.servers', 'listeners', 'security.protocol', 'sasl.mechanism', 'sasl.jaas.config',
    'ssl.truststore.type', 'ssl.truststore.location', 'ssl.truststore.password',
    'ssl.keystore.type', 'ssl.keystore.location', 'ssl.keystore.password',
    'config.providers', 'config.providers.env.class',
)


def _env_reference(name: str) -> str:
    return f'${{env:{name}}}'


def connect_config(spec: KafkaConnectSpec, log: logging.LoggerAdapter) -> Dict[str, Any]:
    """Worker properties: defaults, then user config, then the connection settings."""
    ignored = sorted(k for k in spec.config if k in OPERATOR_OWNED_CONNECT_CONFIG)
    if ignored:
        log.warning(f"Ignoring Kafka Connect configuration options managed by the operator: {ignored}")

    config = dict(DEFAULT_CONNECT_CONFIG)
    config.update({k: v for k, v in spec.config.items() if k not in OPERATOR_OWNED_CONNECT_CONFIG})
    config.update({
        'bootstrap.servers': spec.bootstrap_servers,
        'listeners': f'http://:{REST_API_PORT}',
        'config.providers': 'env',
        'config.providers.env.class': 'org.apache.kafka.common.config.provider.EnvVarConfigProvider',
    })

    security_protocol = None
    if spec.tls is not None:
        security_protocol = 'SSL'
        config['ssl.truststore.type'] = 'PKCS12'
        config['ssl.truststore.location'] = TRUSTSTORE_LOCATION
        config['ssl.truststore.password'] = _env_reference(STORE_PASSWORD_ENV)

    auth = spec.authentication
    if auth is not None:
        if auth.type == 'tls':
            config['ssl.keystore.type'] = 'PKCS12'
            config['ssl.keystore.location'] = KEYSTORE_LOCATION
            config['ssl.keystore.password'] = _env_reference(STORE_PASSWORD_ENV)
        else:
            security_protocol = 'SASL_SSL' if spec.tls is not None else 'SASL_PLAINTEXT'
            config['sasl.mechanism'] = SASL_MECHANISMS[auth.type]
            config['sasl.jaas.config'] = (
                f'{LOGIN_MODULES[auth.type]} required username="{auth.username}" '
                f'password="{_env_reference(PASSWORD_ENV)}";'
            )

    if security_protocol is not None:
        config['security.protocol'] = security_protocol
    return config


class KafkaConnectAssemblyOperator(AbstractAssemblyOperator):
    kind = KIND
    plural = 'kafkaconnects'
    spec_type = KafkaConnectSpec

    async def create_or_update(self, reconciliation: Reconciliation, resource: Dict[str, Any],
                               spec: KafkaConnectSpec, log: logging.LoggerAdapter) -> List[ReconcileResult]:
        desired = self.desired(reconciliation.namespace, reconciliation.name, spec, log)
        return await self.reconciler.reconcile(reconciliation.namespace, reconciliation.name, desired)

    def desired(self, namespace: str, cluster: str, spec: KafkaConnectSpec,
                log: logging.LoggerAdapter) -> DesiredState:
        name = naming.kafka_connect_name(cluster)
        labels = naming.labels(self.kind, cluster, name=name)
        selector = templates.selector_labels(cluster, name)
        config_map_name = f'{name}-config'

        env = [templates.env_var('KAFKA_CONNECT_CONFIGURATION_FILE', f'{CONFIG_DIR}/connect.properties')]
        volumes = [templates.config_volume('config', config_map_name)]
        mounts = [{'name': 'config', 'mountPath': CONFIG_DIR}]
        auth = spec.authentication
        if auth is not None and auth.password_secret is not None:
            env.append({
                'name': PASSWORD_ENV,
                'valueFrom': {'secretKeyRef': {'name': auth.password_secret.secret_name,
                                               'key': auth.password_secret.password}},
            })
        if spec.tls is not None:
            for cert in spec.tls.trusted_certificates:
                volume = f'trusted-{cert.secret_name}'.lower()
                volumes.append(templates.secret_volume(volume, cert.secret_name))
                mounts.append({'name': volume, 'mountPath': f'{CERTS_ROOT}/{cert.secret_name}'})

        template = templates.pod_template(
            labels={**spec.template.pod.metadata.labels, **labels},
            annotations=dict(spec.template.pod.metadata.annotations),
            containers=[templates.container(
                'connect', spec.image,
                ['sh', '-c', '/opt/kafka/kafka_connect_run.sh'],
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
                naming.kafka_connect_api_service_name(cluster), namespace, labels, selector,
                [{'port': REST_API_PORT, 'targetPort': REST_API_PORT, 'name': 'rest-api'}])],
            config_maps=[templates.config_map(config_map_name, namespace, labels, {
                'connect.properties': templates.properties(connect_config(spec, log),
                                                           'Managed by the kafka-assembly-operator'),
            })],
            pdb=templates.pod_disruption_budget(name, namespace, labels, selector,
                                                spec.template.pod_disruption_budget.max_unavailable),
            workload=templates.deployment(name, namespace, labels, spec.replicas, selector, template),
        )
