"""kfleet: multi-node Kubernetes cluster orchestration over SSH."""

__version__ = "0.1.0"
