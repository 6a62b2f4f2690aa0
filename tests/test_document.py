"""Tests for triton_k8s.state.document — StateDocument."""

from __future__ import annotations

import json

import pytest

from triton_k8s.errors import DecodeError, NotFoundError
from triton_k8s.state.document import StateDocument
from triton_k8s.state.models import TritonNodeRecord, host_labels_for


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _node(hostname: str, cluster: str) -> dict:
    return {
        "source": "node-module",
        "hostname": hostname,
        "rancher_environment_id": "${module.%s.rancher_environment_id}" % cluster,
    }


def _populated() -> StateDocument:
    doc = StateDocument()
    doc.set_manager({"source": "manager-module", "name": "prod"})
    doc.set_cluster(
        "triton",
        "dev",
        {"source": "cluster-module", "name": "dev", "triton_account": "acme"},
    )
    doc.set_cluster("aws", "qa", {"source": "cluster-module", "name": "qa"})
    doc.add("node_triton_web", _node("web", "cluster_triton_dev"))
    doc.add("node_triton_web-1", _node("web-1", "cluster_triton_dev"))
    doc.add("node_aws_api", _node("api", "cluster_aws_qa"))
    return doc


# ---------------------------------------------------------------------------
# Load / serialise
# ---------------------------------------------------------------------------


class TestLoad:
    def test_empty_document(self):
        doc = StateDocument.load(b"{}")
        assert doc.module_names() == []
        assert len(doc) == 0

    def test_load_modules(self):
        doc = StateDocument.load(b'{"module": {"a": {"source": "x"}}}')
        assert doc.module_names() == ["a"]
        assert doc.get("module.a.source") == "x"

    def test_load_accepts_str(self):
        doc = StateDocument.load('{"module": {}}')
        assert len(doc) == 0

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            b"not json",
            b"[1, 2]",
            b'"string"',
            b'{"module": []}',
            b'{"module": {"a": 1}}',
            b"\xff\xfe",
            b'{"module": {"x": {"a": NaN}}}',
            b'{"module": {"x": {"a": Infinity}}}',
            b'{"module": {"x": {"a": -Infinity}}}',
        ],
    )
    def test_malformed_raises_decode_error(self, data):
        with pytest.raises(DecodeError):
            StateDocument.load(data)

    def test_unknown_top_level_keys_preserved(self):
        raw = {"module": {"a": {"source": "x"}}, "provider": {"triton": {}}}
        doc = StateDocument.load(json.dumps(raw).encode())
        assert json.loads(doc.to_bytes())["provider"] == {"triton": {}}


class TestToBytes:
    def test_round_trip(self):
        doc = _populated()
        data = doc.to_bytes()
        assert StateDocument.load(data).to_bytes() == data

    def test_round_trip_empty(self):
        data = StateDocument().to_bytes()
        assert StateDocument.load(data).to_bytes() == data

    def test_field_order_independent(self):
        a = StateDocument()
        a.add("m", {"source": "s", "b": 1, "a": {"y": 2, "x": 1}})
        b = StateDocument()
        b.add("m", {"a": {"x": 1, "y": 2}, "b": 1, "source": "s"})
        assert a.to_bytes() == b.to_bytes()

    def test_module_insertion_order_independent(self):
        a = StateDocument()
        a.add("one", {"source": "1"})
        a.add("two", {"source": "2"})
        b = StateDocument()
        b.add("two", {"source": "2"})
        b.add("one", {"source": "1"})
        assert a.to_bytes() == b.to_bytes()

    def test_namespace_and_trailing_newline(self):
        data = StateDocument().to_bytes()
        assert json.loads(data) == {"module": {}}
        assert data.endswith(b"\n")


# ---------------------------------------------------------------------------
# Add / delete
# ---------------------------------------------------------------------------


class TestAdd:
    def test_upsert_replaces_record(self):
        doc = StateDocument()
        doc.add("module.x", {"source": "s", "a": 1, "b": 2})
        doc.add("module.x", {"source": "s", "c": 3})
        assert doc.module_names() == ["x"]
        assert doc.modules["x"] == {"source": "s", "c": 3}

    def test_qualified_and_bare_names_are_the_same(self):
        doc = StateDocument()
        doc.add("module.x", {"source": "1"})
        doc.add("x", {"source": "2"})
        assert doc.module_names() == ["x"]
        assert doc.get("module.x.source") == "2"

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            StateDocument().add("", {"source": "s"})
        with pytest.raises(ValueError):
            StateDocument().add("module.", {"source": "s"})

    def test_non_json_value_rejected(self):
        with pytest.raises(TypeError):
            StateDocument().add("x", {"source": object()})

    def test_non_string_key_rejected(self):
        with pytest.raises(TypeError):
            StateDocument().add("x", {1: "a"})

    def test_nan_rejected(self):
        with pytest.raises(TypeError):
            StateDocument().add("x", {"v": float("nan")})

    def test_non_mapping_rejected(self):
        with pytest.raises(TypeError):
            StateDocument().add("x", ["a"])

    def test_record_is_copied(self):
        record = {"source": "s", "names": ["a"]}
        doc = StateDocument()
        doc.add("x", record)
        record["names"].append("b")
        assert doc.get("module.x.names") == ["a"]

    def test_tuples_become_lists(self):
        doc = StateDocument()
        doc.add("x", {"nets": ("a", "b")})
        assert doc.get("module.x.nets") == ["a", "b"]

    def test_pydantic_record(self):
        doc = StateDocument()
        doc.set_node(
            "triton",
            "web",
            TritonNodeRecord(
                source="src",
                hostname="web",
                rancher_api_url="http://api",
                rancher_environment_id="${module.cluster_triton_dev.rancher_environment_id}",
                rancher_host_labels=host_labels_for("etcd"),
                triton_account="acme",
                triton_key_path="/k",
                triton_key_id="id",
            ),
        )
        record = doc.modules["node_triton_web"]
        assert record["rancher_host_labels"] == {"etcd": "true"}
        assert "triton_url" not in record

    def test_set_manager_key(self):
        doc = StateDocument()
        doc.set_manager({"source": "m", "name": "prod"})
        assert doc.get("module.cluster-manager.name") == "prod"

    def test_set_cluster_returns_key(self):
        assert StateDocument().set_cluster("azure", "x", {"source": "s"}) == "cluster_azure_x"


class TestDelete:
    def test_delete(self):
        doc = _populated()
        doc.delete("module.node_triton_web")
        assert not doc.has_module("node_triton_web")

    def test_delete_missing(self):
        with pytest.raises(NotFoundError):
            StateDocument().delete("nope")


class TestCopy:
    def test_copy_is_independent(self):
        doc = _populated()
        clone = doc.copy()
        clone.delete("node_aws_api")
        assert doc.has_module("node_aws_api")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestGet:
    def test_resolves_nested(self):
        doc = _populated()
        assert doc.get("module.cluster_triton_dev.triton_account") == "acme"

    def test_missing_path_returns_default(self):
        doc = _populated()
        assert doc.get("module.cluster_triton_dev.nope") is None
        assert doc.get("module.missing.field") is None
        assert doc.get("module.missing.field", "") == ""

    def test_path_through_scalar(self):
        doc = _populated()
        assert doc.get("module.cluster-manager.name.deeper") is None

    def test_list_index(self):
        doc = StateDocument()
        doc.add("x", {"nets": ["a", "b"]})
        assert doc.get("module.x.nets.1") == "b"
        assert doc.get("module.x.nets.5") is None
        assert doc.get("module.x.nets.first") is None

    def test_empty_path(self):
        assert StateDocument().get("") is None

    def test_backend_block(self):
        doc = StateDocument()
        doc.set_backend_config({"local": {"path": "/tmp/tfstate"}})
        assert doc.get("terraform.backend.local.path") == "/tmp/tfstate"


class TestNodesAndClusters:
    def test_nodes_by_linkage(self):
        doc = _populated()
        assert doc.nodes("cluster_triton_dev") == {
            "web": "node_triton_web",
            "web-1": "node_triton_web-1",
        }

    def test_nodes_accepts_qualified_name(self):
        doc = _populated()
        assert doc.nodes("module.cluster_aws_qa") == {"api": "node_aws_api"}

    def test_nodes_unknown_cluster(self):
        assert _populated().nodes("cluster_triton_nope") == {}

    def test_cluster_prefix_does_not_leak(self):
        doc = _populated()
        doc.add("node_triton_x", _node("x", "cluster_triton_dev2"))
        assert "x" not in doc.nodes("cluster_triton_dev")

    def test_clusters(self):
        assert _populated().clusters() == {
            "dev": "cluster_triton_dev",
            "qa": "cluster_aws_qa",
        }
