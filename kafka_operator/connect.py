"""Client for the Kafka Connect REST API."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import BackOffConfig
from .errors import ConnectRestError

logger = logging.getLogger(__name__)

REST_API_PORT = 8083


@dataclass(frozen=True)
class BackOff:
    """Exponential back-off: ``initial_delay_ms * multiplier ** n`` between attempts."""

    initial_delay_ms: int = 200
    multiplier: float = 2
    max_attempts: int = 6

    @classmethod
    def from_config(cls, config: BackOffConfig) -> 'BackOff':
        return cls(config.initial_delay_ms, config.multiplier, config.max_attempts)


def _not_found(e: BaseException) -> bool:
    return isinstance(e, ConnectRestError) and e.status_code == 404


class KafkaConnectApi:
    """Async client for a single Connect cluster, used as an async context manager."""

    def __init__(self, host: str, port: int = REST_API_PORT, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.base_url = f'http://{host}:{port}'
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport,
                                         headers={'Accept': 'application/json'})
        self._sleep = sleep

    async def __aenter__(self) -> 'KafkaConnectApi':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise ConnectRestError(method, path, 0, str(e)) from e
        if response.is_error:
            try:
                message = response.json().get('message')
            except ValueError:
                message = response.text
            raise ConnectRestError(method, path, response.status_code, message)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _path(name: str, suffix: str = '') -> str:
        return f"/connectors/{quote(name, safe='')}{suffix}"

    async def list(self) -> List[str]:
        return await self._request('GET', '/connectors') or []

    async def create_or_update_put_request(self, name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug(f"Configuring connector {name} at {self.base_url}")
        return await self._request('PUT', self._path(name, '/config'), config)

    async def delete(self, name: str) -> None:
        logger.info(f"Deleting connector {name} at {self.base_url}")
        await self._request('DELETE', self._path(name))

    async def status(self, name: str) -> Dict[str, Any]:
        return await self._request('GET', self._path(name, '/status'))

    async def pause(self, name: str) -> None:
        logger.info(f"Pausing connector {name}")
        await self._request('PUT', self._path(name, '/pause'))

    async def resume(self, name: str) -> None:
        logger.info(f"Resuming connector {name}")
        await self._request('PUT', self._path(name, '/resume'))

    async def status_with_backoff(self, name: str, backoff: BackOff) -> Dict[str, Any]:
        """Poll the status, retrying while Connect does not know the connector yet.

        Only 404 responses are retried. Any other error, or the last 404 after
        ``backoff.max_attempts`` attempts, is raised.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(backoff.max_attempts),
            wait=wait_exponential(multiplier=backoff.initial_delay_ms / 1000, exp_base=backoff.multiplier),
            retry=retry_if_exception(_not_found),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.status(name)
