from .base import AbstractAssemblyOperator, ReconcileOutcome, Reconciliation, ReconciliationLogger
from .kafka import KafkaAssemblyOperator
from .kafka_connect import KafkaConnectAssemblyOperator
from .mirror_maker import KafkaMirrorMakerAssemblyOperator
from .mirror_maker2 import KafkaMirrorMaker2AssemblyOperator

__all__ = [
    'AbstractAssemblyOperator',
    'KafkaAssemblyOperator',
    'KafkaConnectAssemblyOperator',
    'KafkaMirrorMaker2AssemblyOperator',
    'KafkaMirrorMakerAssemblyOperator',
    'ReconcileOutcome',
    'Reconciliation',
    'ReconciliationLogger',
]
