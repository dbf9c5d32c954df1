"""
Shared fixtures: an in-memory stand-in for the Kubernetes API.

``FakeKubernetesApi`` answers the ``<verb>_namespaced_<kind>`` calls made by
``KubernetesResourceOperator`` for every core, apps and policy kind, so the
real resource operators and reconciler run unchanged against it. Workloads
report themselves observed and ready as soon as they are written, and deleted
pods of a StatefulSet come back immediately from the current pod template.
"""

import copy
import itertools
import re
import threading
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes.client.rest import ApiException

from kafka_operator.config import OperatorConfig
from kafka_operator.resources import ResourceOperatorSupplier

_METHOD = re.compile(r'(read|list|create|patch|delete)_namespaced_(\w+?)(_scale)?$')


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(','):
        key, _, value = term.partition('=')
        if labels.get(key) != value:
            return False
    return True


def _omit_empty(value: Any) -> Any:
    """Drop empty strings, lists and maps the way the API server serializes objects."""
    if isinstance(value, dict):
        return {k: _omit_empty(v) for k, v in value.items() if not (isinstance(v, (str, dict, list)) and not v)}
    if isinstance(value, list):
        return [_omit_empty(v) for v in value]
    return value


def _merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeKubernetesApi:
    """One object playing CoreV1Api, AppsV1Api and PolicyV1Api.

    With ``omit_empty`` set, stored objects lose their empty strings, lists and maps.
    """

    def __init__(self):
        self.store: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.journal: List[Tuple[str, str, str]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self._uids = itertools.count(1)
        self._lock = threading.RLock()
        self.omit_empty = False

    def __getattr__(self, attr):
        match = _METHOD.match(attr)
        if match is None:
            raise AttributeError(attr)
        verb, suffix, scale = match.groups()
        if scale:
            verb = 'scale'
        handler = getattr(self, f'_{verb}')

        def call(*args, **kwargs):
            with self._lock:
                failure = self.failures.get((verb, suffix))
                if failure is not None:
                    raise failure
                return handler(suffix, *args, **kwargs)
        return call

    # helpers for tests

    def put(self, suffix: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(suffix, namespace, body, record=False)

    def get(self, suffix: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.store.get((suffix, namespace, name))

    def names(self, suffix: str, namespace: str) -> List[str]:
        return sorted(n for (s, ns, n) in self.store if s == suffix and ns == namespace)

    def verbs(self, verb: str) -> List[Tuple[str, str]]:
        return [(s, n) for v, s, n in self.journal if v == verb]

    def materialize_pods(self, namespace: str, statefulset: str) -> List[Dict[str, Any]]:
        """Create the pods a StatefulSet controller would have created."""
        sts = self.store[('stateful_set', namespace, statefulset)]
        return [self._pod_from_template(namespace, sts, f'{statefulset}-{i}')
                for i in range(sts['spec']['replicas'])]

    # verbs

    def _read(self, suffix, name, namespace):
        try:
            return copy.deepcopy(self.store[(suffix, namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason='Not Found') from None

    def _list(self, suffix, namespace, label_selector=''):
        items = [copy.deepcopy(r) for (s, ns, _), r in sorted(self.store.items())
                 if s == suffix and ns == namespace
                 and _matches(r['metadata'].get('labels') or {}, label_selector)]
        return SimpleNamespace(items=items)

    def _create(self, suffix, namespace, body, record=True):
        name = body['metadata']['name']
        if (suffix, namespace, name) in self.store:
            raise ApiException(status=409, reason='AlreadyExists')
        resource = copy.deepcopy(body)
        resource['metadata']['namespace'] = namespace
        resource['metadata']['uid'] = f'uid-{next(self._uids)}'
        resource['metadata']['generation'] = 1
        if self.omit_empty:
            resource = _omit_empty(resource)
        self._settle(resource)
        self.store[(suffix, namespace, name)] = resource
        if record:
            self.journal.append(('create', suffix, name))
        return copy.deepcopy(resource)

    def _patch(self, suffix, name, namespace, body):
        resource = self.store.get((suffix, namespace, name))
        if resource is None:
            raise ApiException(status=404, reason='Not Found')
        _merge(resource, body)
        resource['metadata']['generation'] += 1
        if self.omit_empty:
            resource = self.store[(suffix, namespace, name)] = _omit_empty(resource)
        self._settle(resource)
        self.journal.append(('patch', suffix, name))
        return copy.deepcopy(resource)

    def _scale(self, suffix, name, namespace, body):
        resource = self.store[(suffix, namespace, name)]
        resource['spec']['replicas'] = body['spec']['replicas']
        resource['metadata']['generation'] += 1
        self._settle(resource)
        self.journal.append(('scale', suffix, name))
        return {'spec': {'replicas': resource['spec']['replicas']}}

    def _delete(self, suffix, name, namespace):
        try:
            del self.store[(suffix, namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason='Not Found') from None
        self.journal.append(('delete', suffix, name))
        if suffix == 'pod':
            sts = self.store.get(('stateful_set', namespace, name.rsplit('-', 1)[0]))
            if sts is not None:
                self._pod_from_template(namespace, sts, name)
        return {}

    def _settle(self, resource):
        if resource.get('kind') in ('StatefulSet', 'Deployment'):
            replicas = resource['spec'].get('replicas', 1)
            resource['status'] = {'observedGeneration': resource['metadata']['generation'],
                                  'replicas': replicas, 'readyReplicas': replicas}

    def _pod_from_template(self, namespace, sts, name):
        template = sts['spec']['template']['metadata']
        pod = {
            'apiVersion': 'v1',
            'kind': 'Pod',
            'metadata': {'name': name, 'labels': copy.deepcopy(template.get('labels') or {}),
                         'annotations': copy.deepcopy(template.get('annotations') or {})},
            'status': {'conditions': [{'type': 'Ready', 'status': 'True'}]},
        }
        return self._create('pod', namespace, pod, record=False)


class FakeCustomObjectsApi:
    """CustomObjectsApi keeping custom resources by plural."""

    def __init__(self):
        self.store: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.status_updates: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, plural: str, namespace: str, name: str, spec: Optional[Dict[str, Any]],
            generation: int = 1, kind: str = 'Kafka') -> Dict[str, Any]:
        resource = {
            'apiVersion': 'kafka.assembly.io/v1beta1',
            'kind': kind,
            'metadata': {'name': name, 'namespace': namespace, 'generation': generation},
        }
        if spec is not None:
            resource['spec'] = spec
        self.store[(plural, namespace, name)] = resource
        return resource

    def remove(self, plural: str, namespace: str, name: str) -> None:
        del self.store[(plural, namespace, name)]

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        try:
            return copy.deepcopy(self.store[(plural, namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason='Not Found') from None

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=''):
        return {'items': [copy.deepcopy(r) for (p, ns, _), r in self.store.items()
                          if p == plural and ns == namespace]}

    def patch_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        resource = self.store.get((plural, namespace, name))
        if resource is None:
            raise ApiException(status=404, reason='Not Found')
        resource['status'] = copy.deepcopy(body['status'])
        self.status_updates.append((plural, name, copy.deepcopy(body['status'])))
        return copy.deepcopy(resource)


@pytest.fixture
def kube():
    return FakeKubernetesApi()


@pytest.fixture
def ops(kube):
    return ResourceOperatorSupplier(kube, kube, kube, poll_interval=0)


@pytest.fixture
def custom_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def operator_config():
    return OperatorConfig(namespace='test', lock_timeout_seconds=1, operation_timeout_seconds=2)
