"""
Unit tests for the controller: HTTP endpoints and dispatch of watch events.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from kafka_operator.operator import KafkaAssemblyController


def assembly(kind='Kafka', plural='kafkas'):
    mock = MagicMock()
    mock.kind = kind
    mock.plural = plural
    mock.reconcile_one = AsyncMock()
    mock.reconcile_all = AsyncMock(return_value=[])
    return mock


def event(event_type, kind='Kafka', name='my-cluster'):
    return {'type': event_type, 'object': {'kind': kind, 'metadata': {'name': name, 'namespace': 'test'}}}


class TestRoutes:

    @pytest.fixture
    def controller(self, operator_config):
        return KafkaAssemblyController(operator_config, [assembly()])

    def test_health(self, controller):
        response = controller.app.test_client().get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_ready_after_first_pass(self, controller):
        client = controller.app.test_client()

        assert client.get('/ready').status_code == 503
        controller._ready.set()
        assert client.get('/ready').status_code == 200

    def test_metrics(self, controller):
        response = controller.app.test_client().get('/metrics')

        assert response.status_code == 200
        assert b'reconciliations_total' in response.data


class TestHandleEvent:

    @pytest.mark.asyncio
    async def test_schedules_reconciliation(self, operator_config):
        kafka = assembly()
        controller = KafkaAssemblyController(operator_config, [kafka])
        loop = asyncio.get_running_loop()

        await asyncio.to_thread(controller.handle_event, event('MODIFIED'), loop)
        await asyncio.sleep(0.05)

        kafka.reconcile_one.assert_awaited_once_with('test', 'my-cluster', 'watch-modified')

    @pytest.mark.asyncio
    async def test_ignores_errors_and_unknown_kinds(self, operator_config):
        kafka = assembly()
        controller = KafkaAssemblyController(operator_config, [kafka])
        loop = asyncio.get_running_loop()

        controller.handle_event({'type': 'ERROR', 'object': {'code': 410}}, loop)
        controller.handle_event(event('ADDED', kind='KafkaTopic'), loop)
        await asyncio.sleep(0)

        kafka.reconcile_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reconcile_all_visits_every_assembly(self, operator_config):
        kafka, mm2 = assembly(), assembly('KafkaMirrorMaker2', 'kafkamirrormaker2s')
        controller = KafkaAssemblyController(operator_config, [kafka, mm2])

        await controller.reconcile_all()

        kafka.reconcile_all.assert_awaited_once_with('test', 'timer')
        mm2.reconcile_all.assert_awaited_once_with('test', 'timer')


class TestFromCluster:

    def test_assemblies_share_locks_and_workers(self, operator_config, monkeypatch):
        monkeypatch.setattr('kafka_operator.operator.load_kubernetes_config', lambda: None)

        controller = KafkaAssemblyController.from_cluster(operator_config)

        assemblies = list(controller.assemblies.values())
        assert sorted(controller.assemblies) == ['Kafka', 'KafkaConnect', 'KafkaMirrorMaker', 'KafkaMirrorMaker2']
        assert len({id(a.locks) for a in assemblies}) == 1
        assert len({id(a.workers) for a in assemblies}) == 1
        assert len({id(a.ops) for a in assemblies}) == 1
