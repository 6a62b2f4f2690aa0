"""Backend contract: durable storage of one state document per target.

A *target* is a cluster manager name.  The backend exclusively owns the
durable copy; :class:`~triton_k8s.state.document.StateDocument` instances
are throwaway working copies.

Commit discipline (enforced by the coordinator)::

    with backend.lock(target) as owner:
        data = backend.load(target)                     # or NotFoundError on first create
        ...mutate, terraform apply...
        backend.persist_state(target, new, owner=owner) # only after apply succeeded

Every shipped backend implements per-target locking so two operators
working on the same cluster manager cannot both load, mutate, and persist
and silently drop each other's change.  While the lock is held a background
thread refreshes it every ``stale_after / 3`` seconds, so only a lock whose
holder died is ever considered stale.  Writes that carry an ``owner`` token
are refused with :class:`LockError` once that token no longer holds the
lock.  A backend that sets ``supports_locking = False`` may only be used by
a single operator at a time.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from triton_k8s.errors import LockError

logger = logging.getLogger(__name__)

DOCUMENT_FILENAME = "main.tf.json"
TFSTATE_FILENAME = "terraform.tfstate"
LOCK_FILENAME = ".lock"

_TARGET_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def safe_target(name: str) -> str:
    """Return *name* unchanged if it can be used verbatim as a path component
    or object key segment.

    Names are never rewritten, so two distinct targets can never share a
    document.  Anything outside ``[A-Za-z0-9_-]`` raises :class:`ValueError`.
    """
    if not name:
        raise ValueError("Target name must not be empty")
    if not _TARGET_PATTERN.fullmatch(name):
        raise ValueError(
            f"Invalid target name '{name}': only letters, digits, '-' and '_' are allowed"
        )
    return name


class Backend(ABC):
    """Abstract document store with optional per-target mutual exclusion.

    Attributes:
        lock_timeout: Seconds to wait for a held lock before :class:`LockError`.
        poll_interval: Seconds between acquisition attempts.
        stale_after: Seconds without a refresh after which a lock is
            considered abandoned and is broken.
    """

    supports_locking: bool = False

    def __init__(
        self,
        *,
        lock_timeout: float = 300.0,
        poll_interval: float = 2.0,
        stale_after: float = 3600.0,
    ) -> None:
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after

    # -- document operations ----------------------------------------------

    @abstractmethod
    def list_targets(self) -> List[str]:
        """Names of every target that has a committed document."""

    @abstractmethod
    def exists(self, target: str) -> bool:
        ...

    @abstractmethod
    def load(self, target: str) -> bytes:
        """Return the committed snapshot; :class:`NotFoundError` if none."""

    @abstractmethod
    def persist_state(self, target: str, data: bytes, owner: Optional[str] = None) -> None:
        """Write *data* as the new canonical snapshot for *target*.

        With *owner*, raises :class:`LockError` if that token no longer
        holds the lock.
        """

    @abstractmethod
    def delete(self, target: str, owner: Optional[str] = None) -> None:
        """Remove the committed snapshot (after the manager is destroyed)."""

    @abstractmethod
    def terraform_backend_config(self, target: str) -> Dict[str, Any]:
        """Terraform ``backend`` block for the tool's own state of *target*."""

    # -- locking hooks ------------------------------------------------------

    def _try_acquire(self, target: str, owner: str) -> bool:
        raise NotImplementedError

    def _lock_owner(self, target: str) -> Optional[str]:
        """Token of the current lock holder, ``None`` if unlocked."""
        raise NotImplementedError

    def _refresh(self, target: str, owner: str) -> None:
        """Mark the lock as still in use (only if *owner* holds it)."""
        raise NotImplementedError

    def _release(self, target: str, owner: str) -> None:
        raise NotImplementedError

    def _lock_age(self, target: str) -> Optional[float]:
        """Seconds since the lock was taken or last refreshed, ``None`` if unlocked."""
        raise NotImplementedError

    def _break_lock(self, target: str) -> None:
        """Remove the lock, but only if it is still stale at removal time."""
        raise NotImplementedError

    # -- locking ------------------------------------------------------------

    def check_owner(self, target: str, owner: Optional[str]) -> None:
        """Raise :class:`LockError` unless *owner* still holds *target*'s lock."""
        if owner is None or not self.supports_locking:
            return
        current = self._lock_owner(target)
        if current != owner:
            raise LockError(
                f"Lock on '{target}' is no longer held by this operation "
                f"(current holder: {current or 'none'})"
            )

    def _keep_alive(self, target: str, owner: str, stop: threading.Event) -> None:
        interval = self.stale_after / 3
        while not stop.wait(interval):
            try:
                self._refresh(target, owner)
            except Exception as exc:
                # The commit-time owner check reports a lost lock
                logger.warning("Could not refresh lock on '%s': %s", target, exc)

    @contextmanager
    def lock(self, target: str) -> Iterator[Optional[str]]:
        """Hold the per-target lock for the duration of the block.

        Yields the lock token (``None`` for a backend without locking).
        Raises :class:`LockError` if the lock is still held after
        :attr:`lock_timeout` seconds.
        """
        if not self.supports_locking:
            logger.warning(
                "%s has no locking; concurrent use of target '%s' may lose updates.",
                type(self).__name__,
                target,
            )
            yield None
            return

        owner = uuid.uuid4().hex
        deadline = time.monotonic() + self.lock_timeout
        while not self._try_acquire(target, owner):
            age = self._lock_age(target)
            if age is not None and age > self.stale_after:
                logger.warning(
                    "Breaking stale lock on '%s' (not refreshed for %.0f seconds)",
                    target,
                    age,
                )
                self._break_lock(target)
                continue
            if time.monotonic() >= deadline:
                raise LockError(
                    f"Timed out after {self.lock_timeout:.0f}s waiting for the "
                    f"lock on '{target}'"
                )
            logger.debug("Lock on '%s' is held; retrying in %.1fs", target, self.poll_interval)
            time.sleep(self.poll_interval)

        logger.info("Acquired lock on '%s'", target)
        stop = threading.Event()
        keeper = threading.Thread(
            target=self._keep_alive,
            args=(target, owner, stop),
            name=f"lock-keepalive-{target}",
            daemon=True,
        )
        keeper.start()
        try:
            yield owner
        finally:
            stop.set()
            keeper.join()
            self._release(target, owner)
            logger.info("Released lock on '%s'", target)
