"""Typed module records (manager, cluster, node) per provider.

Each record serialises to the JSON object Terraform expects inside a
``module`` block.  Fields that are ``None`` are omitted, mirroring
``omitempty`` on the module inputs.  Unknown fields are kept as-is
(``extra="allow"``) so records loaded from a foreign document round-trip
without loss.

Example::

    node = TritonNodeRecord(
        source="github.com/joyent/triton-kubernetes//terraform/modules/triton-rancher-k8s-host",
        hostname="web-1",
        rancher_environment_id="${module.cluster_triton_prod.rancher_environment_id}",
        rancher_host_labels=host_labels_for("compute"),
        triton_account="acme",
    )
    document.set_node("triton", "web-1", node)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

#: Module name of the single cluster manager in every document.
MANAGER_MODULE = "cluster-manager"

CLUSTER_KEY_PREFIX = "cluster_"
NODE_KEY_PREFIX = "node_"

#: Valid Rancher host roles for a node.
HOST_LABELS = ("compute", "etcd", "orchestration")

#: Valid Azure clouds for an Azure-hosted manager.
AZURE_ENVIRONMENTS = ("public", "government", "german", "china")


def cluster_key(provider: str, name: str) -> str:
    """``cluster_<provider>_<name>``"""
    return f"{CLUSTER_KEY_PREFIX}{provider}_{name}"


def node_key(provider: str, hostname: str) -> str:
    """``node_<provider>_<hostname>``"""
    return f"{NODE_KEY_PREFIX}{provider}_{hostname}"


def module_reference(module_name: str, output: str) -> str:
    """Terraform interpolation of another module's output.

    Forward references like this are resolved by Terraform at apply time,
    never by the state engine.
    """
    return "${module.%s.%s}" % (module_name, output)


# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------


class ModuleRecord(BaseModel):
    """Base for every module record; ``source`` points at the module code."""

    model_config = ConfigDict(extra="allow")

    source: str

    def to_record(self) -> Dict[str, Any]:
        """Plain JSON-compatible dict with unset (``None``) fields dropped."""
        return self.model_dump(mode="json", exclude_none=True)


class RancherHostLabels(BaseModel):
    """Exactly one of the three labels is set to ``"true"``."""

    compute: Optional[str] = None
    etcd: Optional[str] = None
    orchestration: Optional[str] = None


def host_labels_for(label: str) -> RancherHostLabels:
    """Build the host-label block for a node role.

    Raises :class:`ValueError` for anything outside :data:`HOST_LABELS`.
    """
    if label not in HOST_LABELS:
        raise ValueError(
            f"Invalid rancher_host_label '{label}', must be "
            "'compute', 'etcd' or 'orchestration'"
        )
    return RancherHostLabels(**{label: "true"})


# ---------------------------------------------------------------------------
# Manager records
# ---------------------------------------------------------------------------


class ManagerRecord(ModuleRecord):
    """Fields shared by every cluster manager module."""

    name: str
    rancher_admin_password: Optional[str] = None
    rancher_server_image: Optional[str] = None
    rancher_agent_image: Optional[str] = None
    rancher_registry: Optional[str] = None
    rancher_registry_username: Optional[str] = None
    rancher_registry_password: Optional[str] = None


class AzureManagerRecord(ManagerRecord):
    """Cluster manager hosted on Azure."""

    azure_subscription_id: str
    azure_client_id: str
    azure_client_secret: str
    azure_tenant_id: str
    azure_environment: str = "public"
    azure_location: str
    azure_resource_group_name: Optional[str] = None

    azure_size: str
    azure_image_publisher: Optional[str] = None
    azure_image_offer: Optional[str] = None
    azure_image_sku: Optional[str] = None
    azure_image_version: Optional[str] = None

    azure_ssh_user: str = "ubuntu"
    azure_public_key_path: str
    azure_private_key_path: str

    @field_validator("azure_environment")
    @classmethod
    def _check_environment(cls, value: str) -> str:
        if value not in AZURE_ENVIRONMENTS:
            raise ValueError(
                f"Invalid azure_environment '{value}', must be one of: "
                + ", ".join(AZURE_ENVIRONMENTS)
            )
        return value


class TritonManagerRecord(ManagerRecord):
    """Cluster manager hosted on Triton."""

    triton_account: str
    triton_key_path: str
    triton_key_id: str
    triton_url: Optional[str] = None
    triton_network_names: Optional[List[str]] = None
    triton_image_name: Optional[str] = None
    triton_image_version: Optional[str] = None
    triton_ssh_user: Optional[str] = None
    master_triton_machine_package: Optional[str] = None


# ---------------------------------------------------------------------------
# Cluster records
# ---------------------------------------------------------------------------


class ClusterRecord(ModuleRecord):
    """A Kubernetes environment registered with the manager."""

    name: str
    rancher_api_url: str
    rancher_access_key: Optional[str] = None
    rancher_secret_key: Optional[str] = None
    k8s_registry: Optional[str] = None
    k8s_registry_username: Optional[str] = None
    k8s_registry_password: Optional[str] = None


class TritonClusterRecord(ClusterRecord):
    triton_account: str
    triton_key_path: str
    triton_key_id: str
    triton_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Node records
# ---------------------------------------------------------------------------


class NodeRecord(ModuleRecord):
    """A host joined to a cluster.

    ``rancher_environment_id`` references the parent cluster module and is
    the linkage :meth:`StateDocument.nodes` follows.
    """

    hostname: str
    rancher_api_url: str
    rancher_environment_id: str
    rancher_access_key: Optional[str] = None
    rancher_secret_key: Optional[str] = None
    rancher_host_labels: RancherHostLabels = Field(default_factory=RancherHostLabels)

    rancher_registry: Optional[str] = None
    rancher_registry_username: Optional[str] = None
    rancher_registry_password: Optional[str] = None

    k8s_registry: Optional[str] = None
    k8s_registry_username: Optional[str] = None
    k8s_registry_password: Optional[str] = None


class TritonNodeRecord(NodeRecord):
    triton_account: str
    triton_key_path: str
    triton_key_id: str
    triton_url: Optional[str] = None

    triton_network_names: Optional[List[str]] = None
    triton_image_name: Optional[str] = None
    triton_image_version: Optional[str] = None
    triton_ssh_user: Optional[str] = None
    triton_machine_package: Optional[str] = None
