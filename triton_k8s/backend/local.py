"""Filesystem backend.

Layout under *root*::

    <root>/<target>/main.tf.json        canonical document
    <root>/<target>/terraform.tfstate   Terraform's own state (local backend)
    <root>/<target>/.lock               present while a writer holds the target

The lock file is created with ``O_CREAT | O_EXCL`` so only one process can
hold it; its mtime is bumped while held.  A stale lock is broken by renaming
it aside first, so a lock re-acquired in the meantime is put back instead of
deleted.  Documents are written to a temp file and moved into place with
``os.replace`` so readers never see a partial snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from triton_k8s.backend.base import (
    DOCUMENT_FILENAME,
    LOCK_FILENAME,
    TFSTATE_FILENAME,
    Backend,
    safe_target,
)
from triton_k8s.errors import NotFoundError

logger = logging.getLogger(__name__)


class LocalBackend(Backend):
    """Stores one directory per target under *root*."""

    supports_locking = True

    def __init__(self, root: Union[str, Path], **lock_options: float) -> None:
        super().__init__(**lock_options)
        self.root = Path(root).expanduser()

    # -- paths --------------------------------------------------------------

    def target_dir(self, target: str) -> Path:
        return self.root / safe_target(target)

    def document_path(self, target: str) -> Path:
        return self.target_dir(target) / DOCUMENT_FILENAME

    def _lock_path(self, target: str) -> Path:
        return self.target_dir(target) / LOCK_FILENAME

    # -- document operations ----------------------------------------------

    def list_targets(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and (p / DOCUMENT_FILENAME).is_file()
        )

    def exists(self, target: str) -> bool:
        return self.document_path(target).is_file()

    def load(self, target: str) -> bytes:
        path = self.document_path(target)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"No state document for '{target}' at {path}") from exc

    def persist_state(self, target: str, data: bytes, owner: Optional[str] = None) -> None:
        dest = self.document_path(target)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.check_owner(target, owner)
        fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=".main.tf.json.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info("State for '%s' written to %s", target, dest)

    def delete(self, target: str, owner: Optional[str] = None) -> None:
        path = self.document_path(target)
        if not path.is_file():
            raise NotFoundError(f"No state document for '{target}' at {path}")
        self.check_owner(target, owner)
        path.unlink()
        for leftover in (TFSTATE_FILENAME, TFSTATE_FILENAME + ".backup"):
            (path.parent / leftover).unlink(missing_ok=True)
        logger.info("State for '%s' deleted", target)

    def terraform_backend_config(self, target: str) -> Dict[str, Any]:
        return {"local": {"path": str(self.target_dir(target) / TFSTATE_FILENAME)}}

    # -- locking hooks ------------------------------------------------------

    def _try_acquire(self, target: str, owner: str) -> bool:
        path = self._lock_path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(
                {
                    "owner": owner,
                    "pid": os.getpid(),
                    "acquired_at": datetime.now(timezone.utc).isoformat(),
                },
                fh,
            )
        return True

    def _lock_owner(self, target: str) -> Optional[str]:
        try:
            raw = self._lock_path(target).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(raw).get("owner")
        except ValueError:
            # Mid-write by the acquirer
            return ""

    def _refresh(self, target: str, owner: str) -> None:
        if self._lock_owner(target) != owner:
            logger.warning("Lock on '%s' is no longer ours; not refreshing", target)
            return
        os.utime(self._lock_path(target), None)

    def _release(self, target: str, owner: str) -> None:
        current = self._lock_owner(target)
        if current is None:
            logger.warning("Lock on '%s' vanished before release", target)
            return
        if current != owner:
            logger.warning("Cannot release lock on '%s' (not owner)", target)
            return
        self._lock_path(target).unlink(missing_ok=True)

    def _lock_age(self, target: str) -> Optional[float]:
        try:
            mtime = self._lock_path(target).stat().st_mtime
        except FileNotFoundError:
            return None
        return time.time() - mtime

    def _break_lock(self, target: str) -> None:
        path = self._lock_path(target)
        aside = path.with_name(f"{LOCK_FILENAME}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, aside)
        except FileNotFoundError:
            return
        try:
            if time.time() - aside.stat().st_mtime <= self.stale_after:
                # Re-acquired or refreshed since the age check: put it back
                try:
                    os.link(aside, path)
                except FileExistsError:
                    logger.warning("Lock on '%s' was replaced while being restored", target)
        finally:
            aside.unlink(missing_ok=True)
