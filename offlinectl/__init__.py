"""offlinectl - offline Kubernetes bundle orchestrator."""

__version__ = "0.1.0"
