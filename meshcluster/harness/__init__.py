"""Cluster orchestration and verification for tests."""

from meshcluster.fabric.shards import (
    ExitShard,
    ShardResolver,
    diff_exit_shards,
    normalize_exit_shard,
    shard_keys,
)

from .cluster import ClusterOrchestrator, ClusterState
from .convergence import ConvergenceDetector, is_converged
from .remote import RegistrationState, SimulatedRemote
from .watcher import ConnectionWatcher

__all__ = [
    "ClusterOrchestrator",
    "ClusterState",
    "ConnectionWatcher",
    "ConvergenceDetector",
    "ExitShard",
    "RegistrationState",
    "ShardResolver",
    "SimulatedRemote",
    "diff_exit_shards",
    "is_converged",
    "normalize_exit_shard",
    "shard_keys",
]
