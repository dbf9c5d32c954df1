"""Operator configuration, resolved once at process start."""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

API_GROUP = 'kafka.assembly.io'
API_VERSION = 'v1beta1'

DEFAULT_DNS_DOMAIN = 'cluster.local'


@dataclass(frozen=True)
class BackOffConfig:
    initial_delay_ms: int = 200
    multiplier: float = 2
    max_attempts: int = 6


@dataclass(frozen=True)
class OperatorConfig:
    namespace: str = 'default'
    dns_domain: str = DEFAULT_DNS_DOMAIN
    lock_timeout_seconds: float = 60.0
    operation_timeout_seconds: float = 300.0
    reconcile_interval_seconds: float = 120.0
    max_concurrent_reconciliations: int = 10
    api_port: int = 8080
    log_level: str = 'INFO'
    label_selector: Optional[str] = None
    connect_backoff: BackOffConfig = field(default_factory=BackOffConfig)

    def __post_init__(self):
        if self.lock_timeout_seconds <= 0:
            raise ValueError(f"lock_timeout_seconds must be positive, got {self.lock_timeout_seconds}")
        if self.operation_timeout_seconds <= 0:
            raise ValueError(f"operation_timeout_seconds must be positive, got {self.operation_timeout_seconds}")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError(f"reconcile_interval_seconds must be positive, got {self.reconcile_interval_seconds}")
        if self.max_concurrent_reconciliations < 1:
            raise ValueError("max_concurrent_reconciliations must be at least 1")
        if self.connect_backoff.max_attempts < 1:
            raise ValueError("connect backoff max_attempts must be at least 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'OperatorConfig':
        """Build the configuration from environment variables and the optional YAML file."""
        env = os.environ if env is None else env

        values: Dict[str, Any] = {}
        config_file = env.get('OPERATOR_CONFIG_FILE')
        if config_file:
            values.update(load_config_file(config_file))

        env_map = {
            'OPERATOR_NAMESPACE': ('namespace', str),
            'KUBERNETES_SERVICE_DNS_DOMAIN': ('dns_domain', str),
            'LOCK_TIMEOUT_SECONDS': ('lock_timeout_seconds', float),
            'OPERATION_TIMEOUT_SECONDS': ('operation_timeout_seconds', float),
            'RECONCILE_INTERVAL_SECONDS': ('reconcile_interval_seconds', float),
            'MAX_CONCURRENT_RECONCILIATIONS': ('max_concurrent_reconciliations', int),
            'API_PORT': ('api_port', int),
            'LOG_LEVEL': ('log_level', str),
            'LABEL_SELECTOR': ('label_selector', str),
        }
        for env_name, (attr, convert) in env_map.items():
            raw = env.get(env_name)
            if raw is None or raw == '':
                continue
            try:
                values[attr] = convert(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}") from None

        backoff = dict(values.pop('connect_backoff', None) or {})
        backoff_env = {
            'CONNECT_BACKOFF_INITIAL_DELAY_MS': ('initial_delay_ms', int),
            'CONNECT_BACKOFF_MULTIPLIER': ('multiplier', float),
            'CONNECT_BACKOFF_MAX_ATTEMPTS': ('max_attempts', int),
        }
        for env_name, (attr, convert) in backoff_env.items():
            raw = env.get(env_name)
            if raw:
                try:
                    backoff[attr] = convert(raw)
                except ValueError:
                    raise ValueError(f"Invalid value for {env_name}: {raw!r}") from None

        config = cls(connect_backoff=BackOffConfig(**backoff), **values)
        logger.info(f"Operator configuration: {config}")
        return config


def load_config_file(path: str) -> Dict[str, Any]:
    """Read a YAML configuration file using the same keys as ``OperatorConfig``."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")

    known = {f.name for f in fields(OperatorConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys in {path}: {sorted(unknown)}")
    return data
