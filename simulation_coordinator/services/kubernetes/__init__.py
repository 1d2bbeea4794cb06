"""
Kubernetes access for the simulation coordinator.

- KubernetesClient: low-level Kubernetes API interactions
- ClusterClientProvider: single-initialization accessor for the client
- manifests: builders for every resource created in a simulation namespace
"""

from .client import ClusterClientProvider, KubernetesClient, load_balancer_ip, load_cluster_config
from . import manifests

__all__ = [
    "ClusterClientProvider",
    "KubernetesClient",
    "load_balancer_ip",
    "load_cluster_config",
    "manifests",
]
