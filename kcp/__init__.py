"""
Minimal cluster control plane.

Modules:
- model: Pod/Node records, conditions, watch events and snapshots
- state: StateManager, the authoritative versioned cache fed by a store watch
- store: store contract and the in-memory reference store
- kube_store: store adapter backed by a Kubernetes API server
- policy: placement policies used by the scheduler
- scheduler: optimistic, snapshot-based Pod placement
- kubelet: node agent running the reconcile loop and Pod lifecycle
- master: composition of the above, push delivery to kubelets
- api: REST API surface for snapshots and Pod submission
"""

__version__ = "0.3.0"
