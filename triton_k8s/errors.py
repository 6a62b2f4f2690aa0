"""Exception taxonomy for the state engine.

Every error raised by the document, backends, and coordinator derives from
:class:`TritonK8sError` so the CLI can map the whole family to exit codes.
None of these are retried internally.
"""

from __future__ import annotations

from typing import Any, Optional


class TritonK8sError(Exception):
    """Base class for all triton-k8s errors."""


class DecodeError(TritonK8sError):
    """Durable bytes are not a parseable state document."""


class NotFoundError(TritonK8sError):
    """A target, module, or path that had to exist does not."""


class NamingCollisionError(TritonK8sError):
    """A generated node name collided with an existing module.

    The node namer guarantees fresh names, so this signals a logic defect.
    """


class LockError(TritonK8sError):
    """The per-target lock could not be acquired or released."""


class ApplyFailure(TritonK8sError):
    """Terraform exited non-zero; the working document was discarded."""

    def __init__(self, message: str, result: Optional[Any] = None) -> None:
        super().__init__(message)
        self.result = result


class PersistFailure(TritonK8sError):
    """The backend write failed after a successful apply.

    Real infrastructure now exists that the durable record does not
    describe.  The applied document is attached so an operator can
    reconcile by hand.
    """

    def __init__(self, target: str, document: bytes, cause: BaseException) -> None:
        super().__init__(
            f"Infrastructure for '{target}' was applied but the state document "
            f"could not be persisted ({cause}). Manual reconciliation is "
            "required: the backend still holds the previous snapshot."
        )
        self.target = target
        self.document = document
        self.cause = cause
