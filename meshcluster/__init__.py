"""
meshcluster - test cluster harness for a routing mesh

Brings up a ring of relays joined by gossip membership, surrounds it with
dummy channels and simulated remote services, and gives tests the
primitives to wait on and verify the mesh:

- **core**: settings, logging, wire models, fan-in signals, assertions
- **fabric**: the loopback mesh (network, channels, hash ring, membership,
  relays, exit shard resolution, trace collector)
- **harness**: the cluster orchestrator with convergence detection and
  connection lifecycle waits

## Quick Start

```python
from meshcluster import ClusterOrchestrator, ClusterSettings

async with ClusterOrchestrator(ClusterSettings(size=5)) as cluster:
    cluster.check_exit_k_value("bob", 2)
    cluster.check_exit_peers("bob", cluster.remotes["bob"].host_port)
```
"""

from .core import (
    ClusterEnvironment,
    ClusterSettings,
    CollapsedAssert,
    CountedReadySignal,
    LogCapture,
    RegistrationFailure,
    configure_logging,
    join_all,
)
from .harness import (
    ClusterOrchestrator,
    ClusterState,
    ConnectionWatcher,
    ConvergenceDetector,
    ShardResolver,
    SimulatedRemote,
)

__version__ = "0.1.0"

__all__ = [
    "ClusterEnvironment",
    "ClusterOrchestrator",
    "ClusterSettings",
    "ClusterState",
    "CollapsedAssert",
    "ConnectionWatcher",
    "ConvergenceDetector",
    "CountedReadySignal",
    "LogCapture",
    "RegistrationFailure",
    "ShardResolver",
    "SimulatedRemote",
    "configure_logging",
    "join_all",
]
