"""Prometheus metrics of the operator process."""

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Gauge, Histogram, generate_latest

METRICS = {
    'reconciliations': Counter('reconciliations', 'Reconciliation passes', ['kind', 'result']),
    'reconciliation_duration': Histogram('reconciliation_duration_seconds', 'Duration of a reconciliation pass',
                                         ['kind']),
    'ca_renewals': Counter('ca_renewals', 'Certificate authority renewals', ['role']),
    'deferred_restarts': Gauge('deferred_pod_restarts', 'Pods waiting for a maintenance time window',
                               ['namespace', 'cluster', 'component']),
}


def exposition():
    """Body and content type of the ``/metrics`` response."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
