"""
Kafka Assembly Operator Controller

This controller manages Kafka, KafkaConnect, KafkaMirrorMaker2 and
KafkaMirrorMaker custom resources by:
1. Watching the custom resources and reconciling each changed one
2. Periodically reconciling every assembly, including ones whose resource is gone
3. Serving health, readiness and metrics over HTTP
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from typing import Dict, List

from flask import Flask, Response, jsonify
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .assembly import (AbstractAssemblyOperator, KafkaAssemblyOperator, KafkaConnectAssemblyOperator,
                       KafkaMirrorMaker2AssemblyOperator, KafkaMirrorMakerAssemblyOperator)
from .config import API_GROUP, API_VERSION, OperatorConfig
from .lock import LockManager
from .metrics import exposition
from .resources import CustomResourceOperator, ResourceOperatorSupplier

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RESTART_DELAY_SECONDS = 5

ASSEMBLY_OPERATORS = (KafkaAssemblyOperator, KafkaConnectAssemblyOperator, KafkaMirrorMaker2AssemblyOperator,
                      KafkaMirrorMakerAssemblyOperator)


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


class KafkaAssemblyController:
    def __init__(self, operator_config: OperatorConfig, assemblies: List[AbstractAssemblyOperator]):
        self.config = operator_config
        self.namespace = operator_config.namespace
        self.assemblies = {a.kind: a for a in assemblies}
        self._ready = threading.Event()
        self._stopping = threading.Event()

        # Flask app for HTTP API
        self.app = Flask(__name__)
        self.setup_routes()

    @classmethod
    def from_cluster(cls, operator_config: OperatorConfig) -> 'KafkaAssemblyController':
        """Build the controller and its assembly operators against the live cluster."""
        load_kubernetes_config()
        ops = ResourceOperatorSupplier.from_clients()
        custom_api = client.CustomObjectsApi()
        locks = LockManager(operator_config.lock_timeout_seconds)
        workers = asyncio.Semaphore(operator_config.max_concurrent_reconciliations)
        assemblies = [
            operator_type(ops, CustomResourceOperator(custom_api, operator_type.kind, operator_type.plural),
                          operator_config, locks, workers)
            for operator_type in ASSEMBLY_OPERATORS
        ]
        return cls(operator_config, assemblies)

    def setup_routes(self):
        """Setup HTTP API routes."""

        @self.app.route('/health', methods=['GET'])
        def health():
            return jsonify({'status': 'healthy', 'timestamp': datetime.now().isoformat()})

        @self.app.route('/ready', methods=['GET'])
        def ready():
            if self._ready.is_set():
                return jsonify({'status': 'ready'})
            return jsonify({'status': 'starting'}), 503

        @self.app.route('/metrics', methods=['GET'])
        def metrics():
            body, content_type = exposition()
            return Response(body, mimetype=content_type)

    def run_api_server(self):
        """Run the HTTP API server."""
        logger.info(f"Starting HTTP API server on port {self.config.api_port}")
        self.app.run(host='0.0.0.0', port=self.config.api_port, debug=False)

    def handle_event(self, event: Dict, loop: asyncio.AbstractEventLoop) -> None:
        """Handle a watch event by scheduling a reconciliation of the resource on the event loop."""
        event_type = event['type']
        resource = event['object']
        if event_type == 'ERROR':
            logger.warning(f"Watch returned an error: {resource}")
            return

        kind = resource['kind']
        name = resource['metadata']['name']
        namespace = resource['metadata']['namespace']
        assembly = self.assemblies.get(kind)
        if assembly is None:
            logger.debug(f"Ignoring {event_type} event for unknown kind {kind}")
            return

        logger.info(f"Handling {event_type} event for {kind} {namespace}/{name}")
        future = asyncio.run_coroutine_threadsafe(
            assembly.reconcile_one(namespace, name, f'watch-{event_type.lower()}'), loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Reconciliation raised: {future.exception()}")

    def watch_resources(self, assembly: AbstractAssemblyOperator, loop: asyncio.AbstractEventLoop) -> None:
        """Blocking watch loop of one custom resource kind, restarted whenever the stream ends."""
        while not self._stopping.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    assembly.custom.api.list_namespaced_custom_object,
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=self.namespace,
                    plural=assembly.plural,
                    label_selector=self.config.label_selector or '',
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    self.handle_event(event, loop)
                    if self._stopping.is_set():
                        break
            except Exception as e:
                logger.error(f"Error in watch of {assembly.plural}: {e}")
                time.sleep(WATCH_RESTART_DELAY_SECONDS)
            finally:
                w.stop()

    async def reconcile_all(self, trigger: str = 'timer') -> None:
        for assembly in self.assemblies.values():
            try:
                outcomes = await assembly.reconcile_all(self.namespace, trigger)
            except ApiException as e:
                logger.error(f"Failed to list {assembly.kind} resources: {e.status} {e.reason}")
                continue
            failed = [o.name for o in outcomes if not o.success]
            if failed:
                logger.warning(f"{len(failed)} of {len(outcomes)} {assembly.kind} reconciliations failed: {failed}")

    async def run(self):
        """Main controller loop."""
        logger.info(f"Starting Kafka Assembly Operator Controller in namespace {self.namespace}")
        loop = asyncio.get_running_loop()

        for assembly in self.assemblies.values():
            threading.Thread(target=self.watch_resources, args=(assembly, loop),
                             name=f'watch-{assembly.plural}', daemon=True).start()

        try:
            while True:
                await self.reconcile_all()
                self._ready.set()
                await asyncio.sleep(self.config.reconcile_interval_seconds)
        finally:
            self._stopping.set()
