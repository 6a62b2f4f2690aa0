"""Configuration models and loading."""

from triton_k8s.config.loader import (
    CONFIG_FILENAME,
    config_dir,
    load_config,
    write_config,
)
from triton_k8s.config.models import (
    DEFAULT_SOURCE_URL,
    BackendKind,
    BackendSettings,
    ProvisionConfig,
)

__all__ = [
    "BackendKind",
    "BackendSettings",
    "CONFIG_FILENAME",
    "DEFAULT_SOURCE_URL",
    "ProvisionConfig",
    "config_dir",
    "load_config",
    "write_config",
]
