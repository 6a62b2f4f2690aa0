"""Pydantic models for triton-k8s configuration.

The whole configuration is resolved once into a :class:`ProvisionConfig`
and handed to the backend, the Terraform runner, and the coordinator.
Nothing downstream reads flags or environment variables on its own.

YAML layout::

    terraform_binary: terraform
    source_url: github.com/joyent/triton-kubernetes
    stream_output: true
    lock_timeout_seconds: 300
    backend:
      kind: s3
      bucket: my-state-bucket
      prefix: triton-kubernetes
      region: us-west-2
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

DEFAULT_SOURCE_URL = "github.com/joyent/triton-kubernetes"


class BackendKind(str, Enum):
    """Where the canonical documents live."""

    LOCAL = "local"
    S3 = "s3"


class BackendSettings(BaseModel):
    """Backend selection and its location parameters.

    Attributes:
        kind: ``local`` or ``s3``.
        root: Directory for the local backend.  Empty means the XDG config
            directory (resolved by :func:`~triton_k8s.config.loader.load_config`).
        bucket: S3 bucket (required when ``kind`` is ``s3``).
        prefix: Key prefix under which each target gets its own folder.
        region: AWS region for the S3 client.
        profile: AWS profile for the S3 client.
    """

    kind: BackendKind = BackendKind.LOCAL
    root: str = ""
    bucket: str = ""
    prefix: str = "triton-kubernetes"
    region: Optional[str] = None
    profile: Optional[str] = None

    @model_validator(mode="after")
    def _require_bucket(self) -> "BackendSettings":
        if self.kind == BackendKind.S3 and not self.bucket:
            raise ValueError("backend.bucket is required when backend.kind is 's3'")
        self.prefix = self.prefix.strip("/")
        return self


class ProvisionConfig(BaseModel):
    """Fully-resolved configuration for one invocation."""

    terraform_binary: str = "terraform"
    source_url: str = DEFAULT_SOURCE_URL
    stream_output: bool = True

    lock_timeout_seconds: float = Field(default=300.0, ge=0)
    lock_poll_interval: float = Field(default=2.0, gt=0)
    stale_lock_seconds: float = Field(default=3600.0, gt=0)

    backend: BackendSettings = Field(default_factory=BackendSettings)

    def module_source(self, module: str) -> str:
        """Terraform ``source`` for a bundled module, e.g. ``triton-rancher-k8s-host``."""
        return f"{self.source_url}//terraform/modules/{module}"
