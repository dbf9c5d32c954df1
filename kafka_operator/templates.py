"""Plain dict manifests for the dependent resources of an assembly."""

import hashlib
import json
from typing import Any, Dict, List, Optional

from . import naming


def selector_labels(cluster: str, name: str) -> Dict[str, str]:
    return {naming.CLUSTER_LABEL: cluster, naming.NAME_LABEL: name}


def properties(config: Dict[str, Any], header: Optional[str] = None) -> str:
    """Render a Java properties file, keys sorted."""
    lines = [f'# {header}'] if header else []
    for key in sorted(config):
        value = config[key]
        if isinstance(value, bool):
            value = str(value).lower()
        lines.append(f'{key}={value}')
    return '\n'.join(lines) + '\n'


def service_account(name: str, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {
        'apiVersion': 'v1',
        'kind': 'ServiceAccount',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
    }


def service(name: str, namespace: str, labels: Dict[str, str], selector: Dict[str, str],
            ports: List[Dict[str, Any]], headless: bool = False) -> Dict[str, Any]:
    """Create a ClusterIP Service, or a headless one publishing not-ready addresses."""
    spec: Dict[str, Any] = {
        'selector': selector,
        'ports': [dict(p, protocol='TCP') for p in ports],
        'type': 'ClusterIP',
    }
    if headless:
        spec['clusterIP'] = 'None'
        spec['publishNotReadyAddresses'] = True
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'spec': spec,
    }


def config_map(name: str, namespace: str, labels: Dict[str, str], data: Dict[str, str]) -> Dict[str, Any]:
    return {
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'data': data,
    }


def pod_disruption_budget(name: str, namespace: str, labels: Dict[str, str], selector: Dict[str, str],
                          max_unavailable: int) -> Dict[str, Any]:
    return {
        'apiVersion': 'policy/v1',
        'kind': 'PodDisruptionBudget',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'spec': {
            'maxUnavailable': max_unavailable,
            'selector': {'matchLabels': selector},
        },
    }


def container(name: str, image: str, command: List[str], ports: List[Dict[str, Any]],
              env: Optional[List[Dict[str, Any]]] = None,
              volume_mounts: Optional[List[Dict[str, Any]]] = None,
              health_port: Optional[int] = None, http_health_path: Optional[str] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        'name': name,
        'image': image,
        'command': command,
        'ports': ports,
        'env': env or [],
        'volumeMounts': volume_mounts or [],
    }
    if health_port is not None:
        if http_health_path:
            health_check: Dict[str, Any] = {'httpGet': {'path': http_health_path, 'port': health_port}}
        else:
            health_check = {'tcpSocket': {'port': health_port}}
        result['livenessProbe'] = dict(health_check, initialDelaySeconds=60, periodSeconds=30,
                                       timeoutSeconds=10, failureThreshold=3)
        result['readinessProbe'] = dict(health_check, initialDelaySeconds=30, periodSeconds=10,
                                        timeoutSeconds=5, successThreshold=1, failureThreshold=3)
    return result


def pod_template(labels: Dict[str, str], annotations: Dict[str, str], containers: List[Dict[str, Any]],
                 volumes: List[Dict[str, Any]], service_account_name: str) -> Dict[str, Any]:
    return {
        'metadata': {'labels': labels, 'annotations': annotations},
        'spec': {
            'serviceAccountName': service_account_name,
            'containers': containers,
            'volumes': volumes,
        },
    }


def pod_template_revision(template: Dict[str, Any]) -> str:
    """Hash of a pod template, ignoring the CA generation and revision annotations.

    CA rollouts are gated by maintenance windows, so they must not look like a
    spec change.
    """
    ignored = {naming.ANNO_CLUSTER_CA_CERT_GENERATION, naming.ANNO_CLIENTS_CA_CERT_GENERATION,
               naming.ANNO_REVISION}
    metadata = template.get('metadata') or {}
    annotations = {k: v for k, v in (metadata.get('annotations') or {}).items() if k not in ignored}
    stripped = dict(template, metadata=dict(metadata, annotations=annotations))
    return hashlib.sha256(json.dumps(stripped, sort_keys=True).encode()).hexdigest()[:16]


def with_revision(template: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp the template's own revision into its annotations."""
    revision = pod_template_revision(template)
    template['metadata'].setdefault('annotations', {})[naming.ANNO_REVISION] = revision
    return template


def stateful_set(name: str, namespace: str, labels: Dict[str, str], replicas: int, service_name: str,
                 selector: Dict[str, str], template: Dict[str, Any]) -> Dict[str, Any]:
    """Create a StatefulSet whose pods are only replaced when the operator deletes them."""
    return {
        'apiVersion': 'apps/v1',
        'kind': 'StatefulSet',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'spec': {
            'replicas': replicas,
            'serviceName': service_name,
            'podManagementPolicy': 'Parallel',
            'updateStrategy': {'type': 'OnDelete'},
            'selector': {'matchLabels': selector},
            'template': template,
        },
    }


def deployment(name: str, namespace: str, labels: Dict[str, str], replicas: int,
               selector: Dict[str, str], template: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'spec': {
            'replicas': replicas,
            'selector': {'matchLabels': selector},
            'strategy': {
                'type': 'RollingUpdate',
                'rollingUpdate': {'maxSurge': 1, 'maxUnavailable': 0},
            },
            'template': template,
        },
    }


def config_volume(name: str, config_map_name: str) -> Dict[str, Any]:
    return {'name': name, 'configMap': {'name': config_map_name}}


def secret_volume(name: str, secret_name: str) -> Dict[str, Any]:
    return {'name': name, 'secret': {'secretName': secret_name}}


def env_var(name: str, value: Any) -> Dict[str, Any]:
    return {'name': name, 'value': str(value)}
