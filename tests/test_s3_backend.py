"""Tests for triton_k8s.backend.s3 — S3 documents, ETag guards, lock objects."""

from __future__ import annotations

import io
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from triton_k8s.backend.s3 import S3Backend
from triton_k8s.errors import LockError, NotFoundError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeS3:
    """In-memory stand-in for the handful of S3 calls the backend makes.

    Honours ``IfMatch`` / ``IfNoneMatch`` the way S3 conditional writes do.
    """

    def __init__(self):
        self.objects = {}
        self._version = 0
        self.put_calls = []

    def _etag(self):
        self._version += 1
        return f'"etag-{self._version}"'

    def put_object(self, Bucket, Key, Body, **kwargs):
        self.put_calls.append(dict(Key=Key, **kwargs))
        current = self.objects.get(Key)
        if kwargs.get("IfNoneMatch") == "*" and current is not None:
            raise _client_error("PreconditionFailed", "PutObject")
        if "IfMatch" in kwargs and (current is None or current["ETag"] != kwargs["IfMatch"]):
            raise _client_error("PreconditionFailed", "PutObject")
        etag = self._etag()
        self.objects[Key] = {
            "Body": Body,
            "ETag": etag,
            "LastModified": datetime.now(timezone.utc),
        }
        return {"ETag": etag}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        obj = self.objects[Key]
        return {"Body": io.BytesIO(obj["Body"]), "ETag": obj["ETag"]}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        obj = self.objects[Key]
        return {"ETag": obj["ETag"], "LastModified": obj["LastModified"]}

    def delete_object(self, Bucket, Key, **kwargs):
        current = self.objects.get(Key)
        if "IfMatch" in kwargs and (current is None or current["ETag"] != kwargs["IfMatch"]):
            raise _client_error("PreconditionFailed", "DeleteObject")
        self.objects.pop(Key, None)
        return {}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        paginator = MagicMock()

        def paginate(Bucket, Prefix):
            keys = sorted(k for k in self.objects if k.startswith(Prefix))
            # Two pages to exercise pagination
            half = len(keys) // 2
            yield {"Contents": [{"Key": k} for k in keys[:half]]}
            yield {"Contents": [{"Key": k} for k in keys[half:]]}

        paginator.paginate = paginate
        return paginator


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def backend(s3):
    return S3Backend(
        "state-bucket",
        prefix="clusters",
        region="us-west-2",
        client=s3,
        lock_timeout=0.1,
        poll_interval=0.01,
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class TestDocuments:
    def test_keys(self, backend):
        assert backend.document_key("prod") == "clusters/prod/main.tf.json"

    def test_keys_without_prefix(self, s3):
        backend = S3Backend("b", client=s3)
        assert backend.document_key("prod") == "prod/main.tf.json"

    def test_load_missing(self, backend):
        with pytest.raises(NotFoundError):
            backend.load("prod")

    def test_first_persist_uses_if_none_match(self, backend, s3):
        backend.persist_state("prod", b"{}")
        assert s3.put_calls[-1]["IfNoneMatch"] == "*"
        assert "IfMatch" not in s3.put_calls[-1]
        assert s3.put_calls[-1]["ContentType"] == "application/json"

    def test_persist_after_load_uses_if_match(self, backend, s3):
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/main.tf.json", Body=b"v1")
        etag = s3.objects["clusters/prod/main.tf.json"]["ETag"]

        assert backend.load("prod") == b"v1"
        backend.persist_state("prod", b"v2")

        assert s3.put_calls[-1]["IfMatch"] == etag
        assert backend.load("prod") == b"v2"

    def test_consecutive_persists_track_etag(self, backend):
        backend.persist_state("prod", b"v1")
        backend.persist_state("prod", b"v2")
        assert backend.load("prod") == b"v2"

    def test_concurrent_write_detected(self, backend, s3):
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/main.tf.json", Body=b"v1")
        backend.load("prod")
        # Someone else writes behind our back
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/main.tf.json", Body=b"other")

        with pytest.raises(LockError, match="changed since it was loaded"):
            backend.persist_state("prod", b"v2")
        assert s3.objects["clusters/prod/main.tf.json"]["Body"] == b"other"

    def test_create_race_detected(self, backend, s3):
        with pytest.raises(NotFoundError):
            backend.load("prod")
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/main.tf.json", Body=b"x")
        with pytest.raises(LockError):
            backend.persist_state("prod", b"y")

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
        backend = S3Backend("b", client=client)
        with pytest.raises(ClientError):
            backend.load("prod")

    def test_exists(self, backend):
        assert backend.exists("prod") is False
        backend.persist_state("prod", b"{}")
        assert backend.exists("prod") is True

    def test_list_targets(self, backend, s3):
        backend.persist_state("prod", b"{}")
        backend.persist_state("dev", b"{}")
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/terraform.tfstate", Body=b"")
        s3.put_object(Bucket="state-bucket", Key="clusters/a/b/main.tf.json", Body=b"")
        s3.put_object(Bucket="state-bucket", Key="elsewhere/x/main.tf.json", Body=b"")
        assert backend.list_targets() == ["dev", "prod"]

    def test_delete(self, backend, s3):
        backend.persist_state("prod", b"{}")
        s3.put_object(Bucket="state-bucket", Key="clusters/prod/terraform.tfstate", Body=b"")
        backend.delete("prod")
        assert s3.objects == {}
        # Recreating after delete is a fresh create, not an IfMatch write
        backend.persist_state("prod", b"{}")
        assert s3.put_calls[-1]["IfNoneMatch"] == "*"

    def test_delete_missing(self, backend):
        with pytest.raises(NotFoundError):
            backend.delete("prod")

    def test_terraform_backend_config(self, backend):
        assert backend.terraform_backend_config("prod") == {
            "s3": {
                "bucket": "state-bucket",
                "key": "clusters/prod/terraform.tfstate",
                "region": "us-west-2",
            }
        }

    def test_default_client_from_session(self, monkeypatch):
        session = MagicMock()
        monkeypatch.setattr(
            "triton_k8s.backend.s3.boto3.Session", MagicMock(return_value=session)
        )
        backend = S3Backend("b", region="eu-west-1", profile="ops")
        session.client.assert_called_once_with("s3")
        assert backend._s3 is session.client.return_value


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class TestLocking:
    def test_lock_object_lifecycle(self, backend, s3):
        with backend.lock("prod") as owner:
            body = s3.objects["clusters/prod/.lock"]["Body"]
            assert json.loads(body)["owner"] == owner
        assert "clusters/prod/.lock" not in s3.objects

    def test_contended_lock_times_out(self, backend):
        with backend.lock("prod"):
            with pytest.raises(LockError):
                with backend.lock("prod"):
                    pass

    def test_stale_lock_broken(self, backend, s3):
        backend.stale_after = 60
        s3.put_object(
            Bucket="state-bucket",
            Key="clusters/prod/.lock",
            Body=json.dumps({"owner": "ghost"}).encode(),
        )
        s3.objects["clusters/prod/.lock"]["LastModified"] = datetime.now(
            timezone.utc
        ) - timedelta(hours=2)

        with backend.lock("prod") as owner:
            assert json.loads(s3.objects["clusters/prod/.lock"]["Body"])["owner"] == owner

    def test_release_leaves_foreign_lock(self, backend, s3):
        with backend.lock("prod"):
            s3.objects["clusters/prod/.lock"]["Body"] = json.dumps(
                {"owner": "ghost"}
            ).encode()
        assert "clusters/prod/.lock" in s3.objects

    def test_stale_break_skips_replaced_lock(self, backend, s3, monkeypatch):
        backend.stale_after = 60
        s3.put_object(
            Bucket="state-bucket",
            Key="clusters/prod/.lock",
            Body=json.dumps({"owner": "live"}).encode(),
        )
        # The age check saw an older, since-replaced lock object
        monkeypatch.setattr(
            s3,
            "head_object",
            lambda Bucket, Key: {
                "ETag": '"etag-old"',
                "LastModified": datetime.now(timezone.utc) - timedelta(hours=2),
            },
        )
        backend._break_lock("prod")
        assert json.loads(s3.objects["clusters/prod/.lock"]["Body"])["owner"] == "live"

    def test_held_lock_is_refreshed(self, backend, s3):
        backend.stale_after = 0.3
        with backend.lock("prod") as owner:
            time.sleep(0.25)
            refreshes = [
                c for c in s3.put_calls
                if c["Key"] == "clusters/prod/.lock" and "IfMatch" in c
            ]
            assert refreshes
            assert json.loads(s3.objects["clusters/prod/.lock"]["Body"])["owner"] == owner
            assert backend._lock_age("prod") < 0.3

    def test_persist_refused_after_lock_lost(self, backend, s3):
        backend.persist_state("prod", b"old")
        with backend.lock("prod") as owner:
            s3.objects["clusters/prod/.lock"]["Body"] = json.dumps(
                {"owner": "ghost"}
            ).encode()
            with pytest.raises(LockError, match="ghost"):
                backend.persist_state("prod", b"new", owner=owner)
        assert s3.objects["clusters/prod/main.tf.json"]["Body"] == b"old"

    def test_delete_refused_without_lock(self, backend, s3):
        backend.persist_state("prod", b"{}")
        with pytest.raises(LockError):
            backend.delete("prod", owner="expired-token")
        assert "clusters/prod/main.tf.json" in s3.objects


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestBackendFromConfig:
    def test_s3(self, s3):
        from triton_k8s.backend.factory import backend_from_config
        from triton_k8s.config.models import BackendKind, BackendSettings, ProvisionConfig

        cfg = ProvisionConfig(
            lock_poll_interval=0.5,
            backend=BackendSettings(kind=BackendKind.S3, bucket="b", prefix="p"),
        )
        backend = backend_from_config(cfg, s3_client=s3)
        assert isinstance(backend, S3Backend)
        assert backend.document_key("prod") == "p/prod/main.tf.json"
        assert backend.poll_interval == 0.5

    def test_local_requires_root(self):
        from triton_k8s.backend.factory import backend_from_config
        from triton_k8s.config.models import ProvisionConfig

        with pytest.raises(ValueError, match="backend.root"):
            backend_from_config(ProvisionConfig())
