"""Drive the connectors of a Kafka Connect cluster toward a desired set."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .connect import BackOff, KafkaConnectApi
from .errors import ConnectorReconcileError, ConnectorStatusError

logger = logging.getLogger(__name__)

RUNNING = 'RUNNING'
PAUSED = 'PAUSED'

ApiFactory = Callable[[str, int], KafkaConnectApi]


@dataclass(frozen=True)
class ConnectorDescriptor:
    name: str
    class_name: str
    config: Dict[str, Any] = field(default_factory=dict)
    pause: bool = False
    tasks_max: Optional[int] = None

    def rest_config(self) -> Dict[str, Any]:
        """Config map sent to Connect, with values as strings the way the REST API returns them."""
        config = {k: str(v).lower() if isinstance(v, bool) else str(v) for k, v in self.config.items()}
        config['connector.class'] = self.class_name
        if self.tasks_max is not None:
            config['tasks.max'] = str(self.tasks_max)
        return config


def connector_state(name: str, status: Optional[Dict[str, Any]]) -> str:
    state = ((status or {}).get('connector') or {}).get('state')
    if not state:
        raise ConnectorStatusError(f"Status of connector {name} does not contain connector.state")
    return state


class ConnectorReconciler:

    def __init__(self, backoff: Optional[BackOff] = None, api_factory: ApiFactory = KafkaConnectApi):
        self.backoff = backoff or BackOff()
        self._api_factory = api_factory

    async def reconcile_connectors(self, host: str, port: int,
                                   desired: List[ConnectorDescriptor]) -> Dict[str, str]:
        """Returns the final state of every desired connector.

        Connectors are handled independently; one failing does not stop the
        others, and all failures are raised together afterwards.
        """
        async with self._api_factory(host, port) as api:
            live = await api.list()
            wanted = {c.name for c in desired}
            stale = [name for name in live if name not in wanted]
            if stale:
                logger.info(f"Deleting connectors no longer desired on {host}: {stale}")

            names = stale + [c.name for c in desired]
            outcomes = await asyncio.gather(
                *(api.delete(name) for name in stale),
                *(self._reconcile_connector(api, c) for c in desired),
                return_exceptions=True,
            )

        failures: Dict[str, Exception] = {}
        states: Dict[str, str] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"Connector {name} failed to reconcile: {outcome}")
                failures[name] = outcome
            elif name in wanted:
                states[name] = outcome
        if failures:
            raise ConnectorReconcileError(failures)
        return states

    async def _reconcile_connector(self, api: KafkaConnectApi, connector: ConnectorDescriptor) -> str:
        await api.create_or_update_put_request(connector.name, connector.rest_config())
        state = connector_state(connector.name, await api.status_with_backoff(connector.name, self.backoff))

        if state == RUNNING and connector.pause:
            await api.pause(connector.name)
            state = connector_state(connector.name, await api.status(connector.name))
        elif state == PAUSED and not connector.pause:
            await api.resume(connector.name)
            state = connector_state(connector.name, await api.status(connector.name))

        logger.debug(f"Connector {connector.name} is {state}")
        return state
