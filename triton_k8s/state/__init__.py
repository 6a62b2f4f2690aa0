"""State document, typed module records, and node naming."""

from triton_k8s.state.document import (
    CLUSTER_LINK_FIELD,
    MODULE_NAMESPACE,
    StateDocument,
)
from triton_k8s.state.models import (
    HOST_LABELS,
    MANAGER_MODULE,
    AzureManagerRecord,
    ClusterRecord,
    ManagerRecord,
    ModuleRecord,
    NodeRecord,
    RancherHostLabels,
    TritonClusterRecord,
    TritonManagerRecord,
    TritonNodeRecord,
    cluster_key,
    host_labels_for,
    module_reference,
    node_key,
)
from triton_k8s.state.naming import allocate_node_names, max_suffix

__all__ = [
    "AzureManagerRecord",
    "CLUSTER_LINK_FIELD",
    "ClusterRecord",
    "HOST_LABELS",
    "MANAGER_MODULE",
    "MODULE_NAMESPACE",
    "ManagerRecord",
    "ModuleRecord",
    "NodeRecord",
    "RancherHostLabels",
    "StateDocument",
    "TritonClusterRecord",
    "TritonManagerRecord",
    "TritonNodeRecord",
    "allocate_node_names",
    "cluster_key",
    "host_labels_for",
    "max_suffix",
    "module_reference",
    "node_key",
]
