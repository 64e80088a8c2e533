"""Cluster master and node agent: discovery broadcast, node registry with heartbeats, VM node creation and pod upload checking."""

__version__ = "0.1.0"