from .cluster_state import (
    ClusterStateError,
    ClusterStateNotFoundError,
    ClusterStateStore,
    InvalidClusterNameError,
    validate_cluster_name,
)
from .diff import SpecChange, SpecDiff, diff_cluster_specs
from .types import ClusterSpec

__all__ = [
    "ClusterSpec",
    "ClusterStateError",
    "ClusterStateNotFoundError",
    "ClusterStateStore",
    "InvalidClusterNameError",
    "SpecChange",
    "SpecDiff",
    "diff_cluster_specs",
    "validate_cluster_name",
]
