"""Provisioning workflows (coordinator, provider node builders)."""

from triton_k8s.workflow.coordinator import (
    Phase,
    ProvisionCoordinator,
    ProvisionResult,
)
from triton_k8s.workflow.nodes import (
    RANCHER_API_URL,
    TRITON_NODE_MODULE,
    TritonNodeSettings,
    triton_node_factory,
)

__all__ = [
    "Phase",
    "ProvisionCoordinator",
    "ProvisionResult",
    "RANCHER_API_URL",
    "TRITON_NODE_MODULE",
    "TritonNodeSettings",
    "triton_node_factory",
]
