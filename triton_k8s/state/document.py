"""In-memory Terraform JSON document describing one cluster manager.

The document is the literal ``main.tf.json`` handed to Terraform::

    {
      "module": {
        "cluster-manager": {"source": "...", "name": "prod", ...},
        "cluster_triton_dev": {"source": "...", ...},
        "node_triton_web-1": {"rancher_environment_id":
                              "${module.cluster_triton_dev.rancher_environment_id}", ...}
      },
      "terraform": {"backend": {"local": {"path": "..."}}}
    }

Module records are opaque to this class beyond two fields: ``hostname`` and
``rancher_environment_id`` (the node → cluster linkage).  Serialisation uses
**sorted keys** at every level so the same logical document always produces
the same bytes.
"""

from __future__ import annotations

import copy
import json
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from triton_k8s.errors import DecodeError, NotFoundError
from triton_k8s.state.models import (
    CLUSTER_KEY_PREFIX,
    MANAGER_MODULE,
    NODE_KEY_PREFIX,
    cluster_key,
    node_key,
)

logger = logging.getLogger(__name__)

MODULE_NAMESPACE = "module"

#: Node record field that references the parent cluster module.
CLUSTER_LINK_FIELD = "rancher_environment_id"

Record = Union[Mapping[str, Any], BaseModel]


# ---------------------------------------------------------------------------
# Record validation helpers
# ---------------------------------------------------------------------------


def _strip_namespace(name: str) -> str:
    prefix = MODULE_NAMESPACE + "."
    if name.startswith(prefix):
        return name[len(prefix):]
    return name


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _check_json_value(value: Any, path: str) -> None:
    """Raise :class:`TypeError` unless *value* is JSON-primitive compatible."""
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"{path}: non-finite float {value!r} is not valid JSON")
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_json_value(item, f"{path}[{i}]")
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: key {key!r} is not a string")
            _check_json_value(item, f"{path}.{key}")
        return
    raise TypeError(f"{path}: {type(value).__name__} is not JSON-serialisable")


def _to_record_dict(name: str, record: Record) -> Dict[str, Any]:
    if isinstance(record, BaseModel):
        to_record = getattr(record, "to_record", None)
        if callable(to_record):
            return to_record()
        return record.model_dump(mode="json", exclude_none=True)
    if not isinstance(record, Mapping):
        raise TypeError(
            f"module.{name}: record must be a mapping, got {type(record).__name__}"
        )
    _check_json_value(record, f"module.{name}")
    # Round-trip through JSON so tuples become lists and callers keep
    # no reference into the document.
    return json.loads(json.dumps(record))


# ---------------------------------------------------------------------------
# StateDocument
# ---------------------------------------------------------------------------


class StateDocument:
    """Mutable working copy of a cluster manager's module graph."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = data if data is not None else {}
        self._data.setdefault(MODULE_NAMESPACE, {})

    # -- construction -----------------------------------------------------

    @classmethod
    def empty(cls) -> "StateDocument":
        return cls()

    @classmethod
    def load(cls, data: Union[bytes, str]) -> "StateDocument":
        """Parse serialised document bytes.

        Raises :class:`DecodeError` if *data* is not a JSON object whose
        ``module`` key (when present) maps names to objects.
        """
        try:
            text = data.decode("utf-8") if isinstance(data, bytes) else data
            raw = json.loads(text, parse_constant=_reject_constant)
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecodeError(f"State document is not valid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            raise DecodeError(
                f"State document must be a JSON object, got {type(raw).__name__}"
            )
        modules = raw.get(MODULE_NAMESPACE, {})
        if not isinstance(modules, dict):
            raise DecodeError("State document 'module' key must be an object")
        for name, record in modules.items():
            if not isinstance(record, dict):
                raise DecodeError(f"module.{name} must be an object")
        return cls(raw)

    def copy(self) -> "StateDocument":
        return StateDocument(copy.deepcopy(self._data))

    # -- module access ----------------------------------------------------

    @property
    def modules(self) -> Dict[str, Dict[str, Any]]:
        """Module name → record.  Returned dict is a shallow copy."""
        return dict(self._data[MODULE_NAMESPACE])

    def module_names(self) -> List[str]:
        return list(self._data[MODULE_NAMESPACE])

    def has_module(self, name: str) -> bool:
        return _strip_namespace(name) in self._data[MODULE_NAMESPACE]

    def add(self, name: str, record: Record) -> None:
        """Insert or replace the module *name* (last write wins, no merge)."""
        key = _strip_namespace(name)
        if not key:
            raise ValueError("Module name must not be empty")
        modules = self._data[MODULE_NAMESPACE]
        if key in modules:
            logger.debug("Replacing module %s", key)
        modules[key] = _to_record_dict(key, record)

    def delete(self, name: str) -> None:
        key = _strip_namespace(name)
        modules = self._data[MODULE_NAMESPACE]
        if key not in modules:
            raise NotFoundError(f"module.{key} does not exist")
        del modules[key]

    def set_manager(self, record: Record) -> None:
        self.add(MANAGER_MODULE, record)

    def set_cluster(self, provider: str, name: str, record: Record) -> str:
        """Add ``cluster_<provider>_<name>`` and return the module key."""
        key = cluster_key(provider, name)
        self.add(key, record)
        return key

    def set_node(self, provider: str, hostname: str, record: Record) -> str:
        """Add ``node_<provider>_<hostname>`` and return the module key."""
        key = node_key(provider, hostname)
        self.add(key, record)
        return key

    def set_backend_config(self, backend: Mapping[str, Any]) -> None:
        """Write the ``terraform.backend`` block, e.g. ``{"s3": {...}}``."""
        _check_json_value(backend, "terraform.backend")
        self._data["terraform"] = {"backend": json.loads(json.dumps(backend))}

    # -- lookups ----------------------------------------------------------

    def get(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted path such as ``module.cluster_triton_dev.triton_account``.

        Unknown paths return *default*; a reference into a module that has
        not been applied yet is a legal intermediate state, not an error.
        Integer segments index into lists.
        """
        if not path:
            return default
        node: Any = self._data
        for part in path.split("."):
            if isinstance(node, dict):
                if part not in node:
                    return default
                node = node[part]
            elif isinstance(node, list) and part.isdigit():
                idx = int(part)
                if idx >= len(node):
                    return default
                node = node[idx]
            else:
                return default
        return node

    def clusters(self) -> Dict[str, str]:
        """Cluster ``name`` field → module key for every ``cluster_*`` module."""
        result: Dict[str, str] = {}
        for key, record in self._data[MODULE_NAMESPACE].items():
            if key.startswith(CLUSTER_KEY_PREFIX):
                result[str(record.get("name", key))] = key
        return result

    def nodes(self, cluster: str) -> Dict[str, str]:
        """Hostname → module key for nodes linked to *cluster*.

        A node belongs to a cluster when its ``rancher_environment_id``
        references ``module.<cluster>.``.
        """
        reference = f"{MODULE_NAMESPACE}.{_strip_namespace(cluster)}."
        result: Dict[str, str] = {}
        for key, record in self._data[MODULE_NAMESPACE].items():
            if not key.startswith(NODE_KEY_PREFIX):
                continue
            link = record.get(CLUSTER_LINK_FIELD)
            if isinstance(link, str) and reference in link:
                result[str(record.get("hostname", key))] = key
        return result

    # -- serialisation ----------------------------------------------------

    def to_bytes(self) -> bytes:
        """Deterministic UTF-8 JSON (sorted keys, 2-space indent, trailing newline)."""
        payload = json.dumps(
            self._data,
            indent=2,
            sort_keys=True,
            allow_nan=False,
        )
        return (payload + "\n").encode("utf-8")

    def __len__(self) -> int:
        return len(self._data[MODULE_NAMESPACE])

    def __repr__(self) -> str:
        return f"StateDocument(modules={self.module_names()!r})"
