"""Terraform CLI wrapper — init + apply / destroy in a scratch directory.

Wraps ``terraform`` as a subprocess so the state engine never reimplements
provisioning.  Each run gets a fresh temporary directory holding only the
serialised document as ``main.tf.json``; the directory is removed afterwards.

Any non-zero exit is total failure of the operation.  There is no timeout:
cancellation is left to Terraform's own signal handling.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

#: Prefix of the scratch working directories.
WORKDIR_PREFIX = "triton-kubernetes-"

#: Return code used when the binary cannot be executed at all.
RC_NOT_FOUND = 127


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class TerraformResult:
    """Parsed outcome of a ``terraform`` CLI invocation."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TerraformRunner:
    """Runs Terraform against a serialised state document.

    Args:
        binary: Terraform executable (name on PATH or absolute path).
        stream_output: When *True*, Terraform writes straight to the
            terminal; otherwise output is captured into the result.
        extra_env: Variables added to the subprocess environment.
    """

    def __init__(
        self,
        binary: str = "terraform",
        *,
        stream_output: bool = True,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.binary = binary
        self.stream_output = stream_output
        self.extra_env = dict(extra_env or {})

    # -- internal helpers -------------------------------------------------

    def _run(self, args: List[str], workdir: Path) -> TerraformResult:
        cmd = [self.binary, *args]
        env = {**os.environ, "TF_IN_AUTOMATION": "1", **self.extra_env}

        logger.info("Running: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(workdir),
                env=env,
                capture_output=not self.stream_output,
                text=True,
            )
        except FileNotFoundError:
            return TerraformResult(
                command=" ".join(cmd),
                returncode=RC_NOT_FOUND,
                stderr=f"{self.binary} not found on PATH",
            )

        return TerraformResult(
            command=" ".join(cmd),
            returncode=proc.returncode,
            stdout=(proc.stdout or "").strip(),
            stderr=(proc.stderr or "").strip(),
        )

    def _run_in_scratch(self, document: bytes, action: List[str]) -> TerraformResult:
        with tempfile.TemporaryDirectory(prefix=WORKDIR_PREFIX) as tmp:
            workdir = Path(tmp)
            (workdir / "main.tf.json").write_bytes(document)

            result = self._run(["init", "-force-copy", "-input=false"], workdir)
            if not result.success:
                logger.error(
                    "terraform init failed (rc=%d): %s",
                    result.returncode,
                    result.stderr or "(no stderr)",
                )
                return result

            result = self._run(action, workdir)
            if result.success:
                logger.info("%s succeeded", result.command)
            else:
                logger.error(
                    "%s failed (rc=%d): %s",
                    result.command,
                    result.returncode,
                    result.stderr or "(no stderr)",
                )
            return result

    # -- public API -------------------------------------------------------

    def apply(self, document: bytes) -> TerraformResult:
        """``terraform init`` then ``terraform apply -auto-approve``."""
        return self._run_in_scratch(
            document, ["apply", "-auto-approve", "-input=false"]
        )

    def destroy(
        self,
        document: bytes,
        targets: Sequence[str] = (),
    ) -> TerraformResult:
        """``terraform init`` then ``terraform destroy -auto-approve``.

        *targets* limits the destroy to the named modules
        (``-target=module.<name>``); empty means everything.
        """
        args = ["destroy", "-auto-approve", "-input=false"]
        for name in targets:
            ref = name if name.startswith("module.") else f"module.{name}"
            args.append(f"-target={ref}")
        return self._run_in_scratch(document, args)
