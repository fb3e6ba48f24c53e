"""Container Workload Orchestrator (CWO).

Deploys containerized applications onto an existing container platform and
rolls out new revisions progressively:
 - capability-based providers (managed container apps, self-managed docker)
 - weighted traffic splitting across revisions (canary / blue-green)
 - health gating through a shared polling engine
 - Dapr sidecar validation and attachment

The platform itself is reached only through an injectable control-plane client.
"""

__version__ = "0.3.0"
