"""Durable storage for state documents (local filesystem, S3)."""

from triton_k8s.backend.base import (
    DOCUMENT_FILENAME,
    TFSTATE_FILENAME,
    Backend,
    safe_target,
)
from triton_k8s.backend.factory import backend_from_config
from triton_k8s.backend.local import LocalBackend
from triton_k8s.backend.s3 import S3Backend

__all__ = [
    "Backend",
    "DOCUMENT_FILENAME",
    "LocalBackend",
    "S3Backend",
    "TFSTATE_FILENAME",
    "backend_from_config",
    "safe_target",
]
