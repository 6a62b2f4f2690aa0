"""Build the configured backend from a :class:`ProvisionConfig`."""

from __future__ import annotations

from typing import Any, Optional

from triton_k8s.backend.base import Backend
from triton_k8s.backend.local import LocalBackend
from triton_k8s.backend.s3 import S3Backend
from triton_k8s.config.models import BackendKind, ProvisionConfig


def backend_from_config(cfg: ProvisionConfig, *, s3_client: Optional[Any] = None) -> Backend:
    """Return a :class:`LocalBackend` or :class:`S3Backend` per ``cfg.backend``."""
    lock_options = {
        "lock_timeout": cfg.lock_timeout_seconds,
        "poll_interval": cfg.lock_poll_interval,
        "stale_after": cfg.stale_lock_seconds,
    }
    settings = cfg.backend
    if settings.kind == BackendKind.S3:
        return S3Backend(
            settings.bucket,
            prefix=settings.prefix,
            region=settings.region,
            profile=settings.profile,
            client=s3_client,
            **lock_options,
        )
    if not settings.root:
        raise ValueError("backend.root must be set for the local backend")
    return LocalBackend(settings.root, **lock_options)
