"""Deterministic names and labels of the resources belonging to an assembly."""

from typing import Any, Dict, Optional

from .config import API_GROUP

LABEL_DOMAIN = f'{API_GROUP}/'
KIND_LABEL = LABEL_DOMAIN + 'kind'
CLUSTER_LABEL = LABEL_DOMAIN + 'cluster'
NAME_LABEL = LABEL_DOMAIN + 'name'
MANAGED_BY_LABEL = 'app.kubernetes.io/managed-by'
MANAGED_BY = 'kafka-assembly-operator'

ANNO_CA_CERT_GENERATION = LABEL_DOMAIN + 'ca-cert-generation'
ANNO_CLUSTER_CA_CERT_GENERATION = LABEL_DOMAIN + 'cluster-ca-cert-generation'
ANNO_CLIENTS_CA_CERT_GENERATION = LABEL_DOMAIN + 'clients-ca-cert-generation'

ANNO_REVISION = LABEL_DOMAIN + 'revision'


def kafka_statefulset_name(cluster: str) -> str:
    return f'{cluster}-kafka'


def kafka_pod_name(cluster: str, ordinal: int) -> str:
    return f'{kafka_statefulset_name(cluster)}-{ordinal}'


def zookeeper_statefulset_name(cluster: str) -> str:
    return f'{cluster}-zookeeper'


def zookeeper_pod_name(cluster: str, ordinal: int) -> str:
    return f'{zookeeper_statefulset_name(cluster)}-{ordinal}'


def kafka_service_name(cluster: str) -> str:
    return f'{cluster}-kafka-bootstrap'


def kafka_headless_service_name(cluster: str) -> str:
    return f'{cluster}-kafka-brokers'


def zookeeper_service_name(cluster: str) -> str:
    return f'{cluster}-zookeeper-client'


def zookeeper_headless_service_name(cluster: str) -> str:
    return f'{cluster}-zookeeper-nodes'


def kafka_config_map_name(cluster: str) -> str:
    return f'{cluster}-kafka-config'


def zookeeper_config_map_name(cluster: str) -> str:
    return f'{cluster}-zookeeper-config'


def kafka_brokers_secret_name(cluster: str) -> str:
    return f'{cluster}-kafka-brokers'


def zookeeper_nodes_secret_name(cluster: str) -> str:
    return f'{cluster}-zookeeper-nodes'


def ca_cert_secret_name(cluster: str, role: str) -> str:
    """Secret holding the public CA certificate, ``role`` is ``cluster`` or ``clients``."""
    return f'{cluster}-{role}-ca-cert'


def ca_key_secret_name(cluster: str, role: str) -> str:
    return f'{cluster}-{role}-ca'


def kafka_connect_name(cluster: str) -> str:
    return f'{cluster}-connect'


def kafka_connect_api_service_name(cluster: str) -> str:
    return f'{cluster}-connect-api'


def mirror_maker2_name(cluster: str) -> str:
    return f'{cluster}-mirrormaker2'


def mirror_maker2_api_service_name(cluster: str) -> str:
    return f'{cluster}-mirrormaker2-api'


def mirror_maker_name(cluster: str) -> str:
    return f'{cluster}-mirror-maker'


def qualified_service_name(service: str, namespace: str, dns_domain: str) -> str:
    return f'{service}.{namespace}.svc.{dns_domain}'


def labels(kind: str, cluster: str, name: Optional[str] = None,
           extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Labels carried by every dependent resource of an assembly."""
    result = dict(extra or {})
    result.update({
        KIND_LABEL: kind,
        CLUSTER_LABEL: cluster,
        MANAGED_BY_LABEL: MANAGED_BY,
    })
    if name:
        result[NAME_LABEL] = name
    return result


def selector(kind: str, cluster: Optional[str] = None, extra: Optional[str] = None) -> str:
    """Kubernetes label selector string matching resources of an assembly kind."""
    parts = [f'{KIND_LABEL}={kind}']
    if cluster:
        parts.append(f'{CLUSTER_LABEL}={cluster}')
    if extra:
        parts.append(extra)
    return ','.join(parts)


def cluster_of(resource: Dict[str, Any]) -> Optional[str]:
    """Value of the cluster label of a resource manifest."""
    return ((resource.get('metadata') or {}).get('labels') or {}).get(CLUSTER_LABEL)
