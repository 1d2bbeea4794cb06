"""Simulation coordinator: control plane for drone simulation namespaces."""

__version__ = "0.1.0"
