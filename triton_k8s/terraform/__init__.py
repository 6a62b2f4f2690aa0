"""Terraform subprocess boundary."""

from triton_k8s.terraform.runner import (
    RC_NOT_FOUND,
    WORKDIR_PREFIX,
    TerraformResult,
    TerraformRunner,
)

__all__ = [
    "RC_NOT_FOUND",
    "TerraformResult",
    "TerraformRunner",
    "WORKDIR_PREFIX",
]
