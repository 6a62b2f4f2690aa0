"""Configuration loading.

- :func:`config_dir` — XDG config directory (``$XDG_CONFIG_HOME/triton-k8s``)
- :func:`load_config` — parse YAML into a :class:`ProvisionConfig`
- :func:`write_config` — serialise a config back to YAML
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from triton_k8s.config.models import BackendKind, ProvisionConfig

logger = logging.getLogger(__name__)

_APP_DIR = "triton-k8s"
CONFIG_FILENAME = "config.yaml"


def config_dir() -> Path:
    """Return the XDG config directory for triton-k8s.

    Uses ``XDG_CONFIG_HOME`` if set, otherwise ``~/.config``.
    Creates the directory if it does not exist.
    """
    base = os.environ.get("XDG_CONFIG_HOME", "")
    if not base:
        base = str(Path.home() / ".config")
    path = Path(base) / _APP_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProvisionConfig:
    """Load a :class:`ProvisionConfig` from YAML.

    A missing file yields the defaults.  *overrides* (e.g. CLI flags) are
    applied on top of the file's top-level keys.  An empty local backend
    root resolves to ``<config_dir>/state``.

    Raises :class:`ValueError` when the file content does not validate.
    """
    cfg_path = Path(path) if path is not None else config_dir() / CONFIG_FILENAME
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        with open(cfg_path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{cfg_path}: top level must be a mapping")
        logger.debug("Loaded config from %s", cfg_path)

    if overrides:
        raw.update({k: v for k, v in overrides.items() if v is not None})

    try:
        cfg = ProvisionConfig.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {cfg_path}: {exc}") from exc

    if cfg.backend.kind == BackendKind.LOCAL and not cfg.backend.root:
        cfg.backend.root = str(config_dir() / "state")
    return cfg


def write_config(cfg: ProvisionConfig, path: Union[str, Path]) -> Path:
    """Serialise *cfg* to YAML at *path* and return the path."""
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    data = cfg.model_dump(mode="json", exclude_none=True)
    with open(dest, "w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
    return dest
