"""triton-k8s - state engine for multi-cloud Kubernetes provisioning.

Keeps one Terraform JSON document per cluster manager, mutates it as
clusters and nodes are added or removed, and commits it to a local or S3
backend only after Terraform has applied the change.
"""

try:
    from importlib.metadata import version

    __version__ = version("triton-k8s")
except Exception:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]
