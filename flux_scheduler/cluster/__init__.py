"""The cluster module is the boundary to the live state units are applied to."""

from .cluster import Cluster
from .in_memory import InMemoryCluster
from .kubectl import KubectlCluster

__all__ = [
    "Cluster",
    "InMemoryCluster",
    "KubectlCluster",
]
