"""Provider node record builders.

The prompting layer resolves every choice up front into a settings struct;
the builder here only fills the gaps from the parent cluster module that is
already committed in the document, and wires the Terraform references that
tie the node to its cluster and manager.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from pydantic import BaseModel

from triton_k8s.config.models import ProvisionConfig
from triton_k8s.state.document import MODULE_NAMESPACE, StateDocument
from triton_k8s.state.models import (
    MANAGER_MODULE,
    TritonNodeRecord,
    host_labels_for,
    module_reference,
)
from triton_k8s.workflow.coordinator import NodeRecordFactory

logger = logging.getLogger(__name__)

TRITON_NODE_MODULE = "triton-rancher-k8s-host"

#: Rancher API on the first manager master; resolved by Terraform at apply time.
RANCHER_API_URL = "http://${element(module.%s.masters, 0)}:8080" % MANAGER_MODULE

#: Settings a node inherits from its cluster module when not given explicitly.
INHERITED_FIELDS = (
    "triton_account",
    "triton_key_path",
    "triton_key_id",
    "triton_url",
    "rancher_access_key",
    "rancher_secret_key",
    "k8s_registry",
    "k8s_registry_username",
    "k8s_registry_password",
)

_REQUIRED_FIELDS = ("triton_account", "triton_key_path", "triton_key_id")


class TritonNodeSettings(BaseModel):
    """Fully-resolved inputs for Triton nodes.

    ``None`` means "inherit from the cluster module" for the fields in
    :data:`INHERITED_FIELDS` and "leave unset" for the rest.
    """

    host_label: str = "compute"

    triton_account: Optional[str] = None
    triton_key_path: Optional[str] = None
    triton_key_id: Optional[str] = None
    triton_url: Optional[str] = None

    triton_network_names: Optional[List[str]] = None
    triton_image_name: Optional[str] = None
    triton_image_version: Optional[str] = None
    triton_ssh_user: Optional[str] = "root"
    triton_machine_package: Optional[str] = None

    rancher_access_key: Optional[str] = None
    rancher_secret_key: Optional[str] = None
    rancher_registry: Optional[str] = None
    rancher_registry_username: Optional[str] = None
    rancher_registry_password: Optional[str] = None

    k8s_registry: Optional[str] = None
    k8s_registry_username: Optional[str] = None
    k8s_registry_password: Optional[str] = None


def _resolve(
    settings: TritonNodeSettings,
    document: StateDocument,
    cluster: str,
    name: str,
) -> Any:
    value = getattr(settings, name)
    if value is not None:
        return value
    return document.get(f"module.{cluster}.{name}")


def triton_node_factory(
    cfg: ProvisionConfig,
    cluster: str,
    settings: TritonNodeSettings,
) -> NodeRecordFactory:
    """Return a ``(document, hostname) -> TritonNodeRecord`` builder.

    Raises :class:`ValueError` (from the builder) when Triton credentials
    are neither in *settings* nor on the cluster module.
    """
    prefix = MODULE_NAMESPACE + "."
    if cluster.startswith(prefix):
        cluster = cluster[len(prefix):]
    labels = host_labels_for(settings.host_label)
    source = cfg.module_source(TRITON_NODE_MODULE)

    def build(document: StateDocument, hostname: str) -> TritonNodeRecord:
        values = {name: _resolve(settings, document, cluster, name) for name in INHERITED_FIELDS}
        missing = [name for name in _REQUIRED_FIELDS if not values.get(name)]
        if missing:
            raise ValueError(
                f"{', '.join(missing)} must be set for node '{hostname}' "
                f"(not found on module.{cluster})"
            )
        logger.debug("Building Triton node %s for %s", hostname, cluster)
        return TritonNodeRecord(
            source=source,
            hostname=hostname,
            rancher_api_url=RANCHER_API_URL,
            rancher_environment_id=module_reference(cluster, "rancher_environment_id"),
            rancher_host_labels=labels,
            triton_network_names=settings.triton_network_names,
            triton_image_name=settings.triton_image_name,
            triton_image_version=settings.triton_image_version,
            triton_ssh_user=settings.triton_ssh_user,
            triton_machine_package=settings.triton_machine_package,
            rancher_registry=settings.rancher_registry,
            rancher_registry_username=settings.rancher_registry_username,
            rancher_registry_password=settings.rancher_registry_password,
            **values,
        )

    return build
