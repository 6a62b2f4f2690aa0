"""S3 backend.

Layout under ``s3://<bucket>/<prefix>/``::

    <target>/main.tf.json        canonical document
    <target>/terraform.tfstate   Terraform's own state (s3 backend)
    <target>/.lock               lock object, created with ``If-None-Match: *``

Two layers of protection against lost updates:

1. The lock object is a conditional create, so only one writer holds a
   target at a time.
2. ``persist_state`` writes with ``If-Match: <etag seen at load>`` (or
   ``If-None-Match: *`` for a brand new target), so a write that races an
   unlocked writer fails with :class:`LockError` instead of overwriting.

The lock object is rewritten (``If-Match`` its own ETag) while held, which
bumps ``LastModified``; a stale lock is deleted with ``If-Match`` too, so a
lock refreshed or re-acquired after the age check survives.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from triton_k8s.backend.base import (
    DOCUMENT_FILENAME,
    LOCK_FILENAME,
    TFSTATE_FILENAME,
    Backend,
    safe_target,
)
from triton_k8s.errors import LockError, NotFoundError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3Backend(Backend):
    """Stores one key prefix per target in an S3 bucket.

    *client* may be injected (tests, custom endpoints); otherwise one is
    built from *profile* / *region*.
    """

    supports_locking = True

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        region: Optional[str] = None,
        profile: Optional[str] = None,
        client: Optional[Any] = None,
        **lock_options: float,
    ) -> None:
        super().__init__(**lock_options)
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        if client is None:
            session = boto3.Session(profile_name=profile, region_name=region)
            client = session.client("s3")
        self._s3 = client
        self._etags: Dict[str, str] = {}

    # -- keys ---------------------------------------------------------------

    def _key(self, target: str, filename: str) -> str:
        parts = [self.prefix] if self.prefix else []
        parts.extend([safe_target(target), filename])
        return "/".join(parts)

    def document_key(self, target: str) -> str:
        return self._key(target, DOCUMENT_FILENAME)

    # -- document operations ----------------------------------------------

    def list_targets(self) -> List[str]:
        list_prefix = f"{self.prefix}/" if self.prefix else ""
        suffix = "/" + DOCUMENT_FILENAME
        targets: List[str] = []
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
            for obj in page.get("Contents", []):
                rel = obj["Key"][len(list_prefix):]
                if rel.endswith(suffix) and "/" not in rel[: -len(suffix)]:
                    targets.append(rel[: -len(suffix)])
        return sorted(targets)

    def exists(self, target: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=self.document_key(target))
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise
        return True

    def load(self, target: str) -> bytes:
        key = self.document_key(target)
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                self._etags.pop(target, None)
                raise NotFoundError(
                    f"No state document for '{target}' at s3://{self.bucket}/{key}"
                ) from exc
            raise
        etag = resp.get("ETag")
        if etag:
            self._etags[target] = etag
        return resp["Body"].read()

    def persist_state(self, target: str, data: bytes, owner: Optional[str] = None) -> None:
        self.check_owner(target, owner)
        key = self.document_key(target)
        kwargs: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": "application/json",
        }
        etag = self._etags.get(target)
        if etag:
            kwargs["IfMatch"] = etag
        else:
            kwargs["IfNoneMatch"] = "*"

        try:
            resp = self._s3.put_object(**kwargs)
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES:
                raise LockError(
                    f"s3://{self.bucket}/{key} changed since it was loaded"
                ) from exc
            raise
        new_etag = resp.get("ETag")
        if new_etag:
            self._etags[target] = new_etag
        logger.info("State for '%s' written to s3://%s/%s", target, self.bucket, key)

    def delete(self, target: str, owner: Optional[str] = None) -> None:
        if not self.exists(target):
            raise NotFoundError(f"No state document for '{target}'")
        self.check_owner(target, owner)
        for filename in (DOCUMENT_FILENAME, TFSTATE_FILENAME):
            self._s3.delete_object(Bucket=self.bucket, Key=self._key(target, filename))
        self._etags.pop(target, None)
        logger.info("State for '%s' deleted", target)

    def terraform_backend_config(self, target: str) -> Dict[str, Any]:
        cfg: Dict[str, Any] = {
            "bucket": self.bucket,
            "key": self._key(target, TFSTATE_FILENAME),
        }
        if self.region:
            cfg["region"] = self.region
        return {"s3": cfg}

    # -- locking hooks ------------------------------------------------------

    def _try_acquire(self, target: str, owner: str) -> bool:
        body = json.dumps(
            {"owner": owner, "acquired_at": datetime.now(timezone.utc).isoformat()}
        ).encode("utf-8")
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=self._key(target, LOCK_FILENAME),
                Body=body,
                ContentType="application/json",
                IfNoneMatch="*",
            )
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES:
                return False
            raise
        return True

    def _read_lock(self, target: str) -> Optional[Tuple[Optional[str], bytes, str]]:
        """``(owner, body, etag)`` of the lock object, ``None`` if absent."""
        try:
            resp = self._s3.get_object(
                Bucket=self.bucket, Key=self._key(target, LOCK_FILENAME)
            )
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise
        body = resp["Body"].read()
        try:
            owner = json.loads(body).get("owner")
        except ValueError:
            owner = None
        return owner, body, resp.get("ETag", "")

    def _lock_owner(self, target: str) -> Optional[str]:
        lock = self._read_lock(target)
        return None if lock is None else lock[0]

    def _refresh(self, target: str, owner: str) -> None:
        lock = self._read_lock(target)
        if lock is None or lock[0] != owner:
            logger.warning("Lock on '%s' is no longer ours; not refreshing", target)
            return
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=self._key(target, LOCK_FILENAME),
                Body=lock[1],
                ContentType="application/json",
                IfMatch=lock[2],
            )
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES:
                logger.warning("Lock on '%s' changed during refresh", target)
                return
            raise

    def _release(self, target: str, owner: str) -> None:
        lock = self._read_lock(target)
        if lock is None:
            logger.warning("Lock on '%s' vanished before release", target)
            return
        if lock[0] != owner:
            logger.warning("Cannot release lock on '%s' (not owner)", target)
            return
        self._s3.delete_object(Bucket=self.bucket, Key=self._key(target, LOCK_FILENAME))

    def _head_lock(self, target: str) -> Optional[Dict[str, Any]]:
        try:
            return self._s3.head_object(
                Bucket=self.bucket, Key=self._key(target, LOCK_FILENAME)
            )
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise

    @staticmethod
    def _age(head: Dict[str, Any]) -> Optional[float]:
        last_modified = head.get("LastModified")
        if last_modified is None:
            return None
        return (datetime.now(timezone.utc) - last_modified).total_seconds()

    def _lock_age(self, target: str) -> Optional[float]:
        head = self._head_lock(target)
        return None if head is None else self._age(head)

    def _break_lock(self, target: str) -> None:
        head = self._head_lock(target)
        if head is None:
            return
        age = self._age(head)
        if age is None or age <= self.stale_after:
            return
        try:
            self._s3.delete_object(
                Bucket=self.bucket,
                Key=self._key(target, LOCK_FILENAME),
                IfMatch=head["ETag"],
            )
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES | _NOT_FOUND_CODES:
                logger.warning("Lock on '%s' changed before it could be broken", target)
                return
            raise
