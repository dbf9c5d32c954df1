"""Exceptions raised by the operator while reconciling assemblies."""

from typing import Dict, Optional


class OperatorError(Exception):
    """Base class for all operator errors."""

    reason = 'ReconciliationError'


class LockTimeoutError(OperatorError):
    """The named reconciliation lock could not be acquired in time."""

    reason = 'LockTimeout'

    def __init__(self, lock_name: str, timeout: float):
        super().__init__(f"Failed to acquire lock {lock_name} within {timeout}s")
        self.lock_name = lock_name
        self.timeout = timeout


class InvalidSpecError(OperatorError):
    """The desired-state descriptor failed validation."""

    reason = 'InvalidResourceException'


class CaInitializationError(OperatorError):
    """Persisted certificate authority material is missing or malformed."""

    reason = 'CaInitializationError'


class ResourceApplyError(OperatorError):
    """A dependent resource could not be read, created, patched or deleted."""

    reason = 'ResourceApplyError'

    def __init__(self, kind: str, namespace: str, name: str, cause: Exception):
        super().__init__(f"Failed to reconcile {kind} {namespace}/{name}: {cause}")
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.cause = cause


class ConnectRestError(OperatorError):
    """Non-successful response from the Kafka Connect REST API."""

    reason = 'ConnectRestException'

    def __init__(self, method: str, path: str, status_code: int, message: Optional[str] = None):
        super().__init__(f"{method} {path} returned {status_code}: {message}")
        self.method = method
        self.path = path
        self.status_code = status_code
        self.message = message


class ConnectorReconcileError(OperatorError):
    """One or more connectors failed to reconcile.

    ``failures`` maps the connector name to the exception raised for it.
    """

    reason = 'ConnectorReconcileError'

    def __init__(self, failures: Dict[str, Exception]):
        names = ', '.join(sorted(failures))
        super().__init__(f"Failed to reconcile connectors: {names}")
        self.failures = failures


class OperationTimeoutError(OperatorError):
    """A resource did not reach the awaited state within the operation timeout."""

    reason = 'TimeoutException'

    def __init__(self, kind: str, namespace: str, name: str, condition: str, timeout: float):
        super().__init__(f"{kind} {namespace}/{name} did not become {condition} within {timeout}s")
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.condition = condition
        self.timeout = timeout


class ConnectorStatusError(OperatorError):
    """The Kafka Connect status response did not contain a connector state."""

    reason = 'ConnectorStatusError'
