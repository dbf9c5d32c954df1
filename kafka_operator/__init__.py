"""Kubernetes operator for Kafka clusters and MirrorMaker deployments."""

__version__ = '0.1.0'
