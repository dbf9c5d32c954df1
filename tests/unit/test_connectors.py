"""
Unit tests for ConnectorReconciler against an in-memory Connect cluster.

Covers:
- configuring desired connectors and deleting stale ones
- pausing and resuming according to the desired pause flag
- failures of one connector not stopping the others
"""

from typing import Dict, List

import pytest

from kafka_operator.connect import BackOff
from kafka_operator.connectors import ConnectorDescriptor, ConnectorReconciler, connector_state
from kafka_operator.errors import ConnectorReconcileError, ConnectorStatusError, ConnectRestError


class FakeConnectCluster:
    """Connect worker state shared by every client the factory hands out."""

    def __init__(self, connectors: Dict[str, str] = None):
        self.states: Dict[str, str] = dict(connectors or {})
        self.configs: Dict[str, Dict] = {}
        self.calls: List[tuple] = []
        self.failing: Dict[str, Exception] = {}
        self.hosts: List[tuple] = []

    def factory(self, host, port):
        self.hosts.append((host, port))
        return FakeConnectApi(self)


class FakeConnectApi:
    def __init__(self, cluster: FakeConnectCluster):
        self.cluster = cluster

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def list(self):
        return sorted(self.cluster.states)

    async def delete(self, name):
        self.cluster.calls.append(('delete', name))
        del self.cluster.states[name]

    async def create_or_update_put_request(self, name, config):
        self.cluster.calls.append(('put', name))
        if name in self.cluster.failing:
            raise self.cluster.failing[name]
        self.cluster.configs[name] = config
        self.cluster.states.setdefault(name, 'RUNNING')
        return {'name': name, 'config': config}

    async def status(self, name):
        self.cluster.calls.append(('status', name))
        state = self.cluster.states.get(name)
        return {'name': name, 'connector': {'state': state} if state else {}}

    async def status_with_backoff(self, name, backoff):
        return await self.status(name)

    async def pause(self, name):
        self.cluster.calls.append(('pause', name))
        self.cluster.states[name] = 'PAUSED'

    async def resume(self, name):
        self.cluster.calls.append(('resume', name))
        self.cluster.states[name] = 'RUNNING'


def connector(name, pause=False, **config):
    return ConnectorDescriptor(name, 'org.example.Connector', config, pause=pause, tasks_max=2)


def reconciler_for(cluster):
    return ConnectorReconciler(BackOff(), api_factory=cluster.factory)


class TestReconcileConnectors:

    @pytest.mark.asyncio
    async def test_creates_and_deletes_stale(self):
        cluster = FakeConnectCluster({'old': 'RUNNING'})

        states = await reconciler_for(cluster).reconcile_connectors(
            'mm2.test.svc', 8083, [connector('a', topics='.*', enabled=True)])

        assert states == {'a': 'RUNNING'}
        assert ('delete', 'old') in cluster.calls
        assert cluster.hosts == [('mm2.test.svc', 8083)]
        assert cluster.configs['a'] == {'topics': '.*', 'enabled': 'true',
                                        'connector.class': 'org.example.Connector', 'tasks.max': '2'}

    @pytest.mark.asyncio
    async def test_pauses_running_connector_once(self):
        cluster = FakeConnectCluster()
        reconciler = reconciler_for(cluster)

        states = await reconciler.reconcile_connectors('h', 8083, [connector('a', pause=True)])
        again = await reconciler.reconcile_connectors('h', 8083, [connector('a', pause=True)])

        assert states == {'a': 'PAUSED'}
        assert again == {'a': 'PAUSED'}
        assert cluster.calls.count(('pause', 'a')) == 1

    @pytest.mark.asyncio
    async def test_resumes_paused_connector(self):
        cluster = FakeConnectCluster({'a': 'PAUSED'})

        states = await reconciler_for(cluster).reconcile_connectors('h', 8083, [connector('a')])

        assert states == {'a': 'RUNNING'}
        assert ('resume', 'a') in cluster.calls
        assert ('pause', 'a') not in cluster.calls

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_connectors(self):
        cluster = FakeConnectCluster()
        cluster.failing['bad'] = ConnectRestError('PUT', '/connectors/bad/config', 400, 'invalid config')

        with pytest.raises(ConnectorReconcileError) as exc_info:
            await reconciler_for(cluster).reconcile_connectors('h', 8083, [connector('bad'), connector('good')])

        assert list(exc_info.value.failures) == ['bad']
        assert cluster.configs.keys() == {'good'}
        assert exc_info.value.reason == 'ConnectorReconcileError'

    @pytest.mark.asyncio
    async def test_no_desired_connectors_deletes_everything(self):
        cluster = FakeConnectCluster({'x': 'RUNNING', 'y': 'FAILED'})

        assert await reconciler_for(cluster).reconcile_connectors('h', 8083, []) == {}
        assert cluster.states == {}


class TestConnectorState:

    def test_state(self):
        assert connector_state('a', {'connector': {'state': 'FAILED'}}) == 'FAILED'

    @pytest.mark.parametrize('status', [None, {}, {'connector': {}}])
    def test_missing_state(self, status):
        with pytest.raises(ConnectorStatusError):
            connector_state('a', status)
