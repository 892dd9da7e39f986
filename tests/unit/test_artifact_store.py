"""Tests for ArtifactStore: content addressing, execution scoping, eviction."""

from __future__ import annotations

import pytest

from deployline.core.artifact_store import (
    ArtifactNotFoundError,
    ArtifactStore,
    decode_manifest,
    encode_manifest,
)
from deployline.core.hasher import sha256_hex


class TestArtifactStore:
    def test_put_and_get(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Build", "image", b"layer-data", action_name="docker")
        assert ref.content_address == f"sha256:{sha256_hex(b'layer-data')}"
        assert ref.size_bytes == len(b"layer-data")
        assert ref.action_name == "docker"
        assert artifact_store.get(ref) == b"layer-data"

    def test_same_name_in_two_executions_is_isolated(self, artifact_store: ArtifactStore):
        a = artifact_store.put("ex-1", "Source", "source", b"commit-a")
        b = artifact_store.put("ex-2", "Source", "source", b"commit-b")
        assert artifact_store.get(a) == b"commit-a"
        assert artifact_store.get(b) == b"commit-b"
        assert artifact_store.find("ex-1", "source") == a
        assert artifact_store.find("ex-3", "source") is None

    def test_unknown_ref_raises(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Source", "source", b"x")
        other = ref.model_copy(update={"execution_id": "ex-unknown"})
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.get(other)

    def test_put_is_idempotent_per_key(self, artifact_store: ArtifactStore):
        artifact_store.put("ex-1", "Build", "image", b"first")
        second = artifact_store.put("ex-1", "Build", "image", b"second")
        assert artifact_store.get(second) == b"second"
        assert len(artifact_store.list_refs("ex-1")) == 1
        assert artifact_store.overwrites_after_read == 0

    def test_overwrite_after_read_is_counted(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Build", "image", b"first")
        artifact_store.get(ref)
        latest = artifact_store.put("ex-1", "Build", "image", b"second")
        assert artifact_store.overwrites_after_read == 1
        assert artifact_store.get(latest) == b"second"

    def test_evict_drops_execution(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Source", "source", b"payload")
        assert artifact_store.evict("ex-1") == 1
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.get(ref)
        assert artifact_store.exists(ref.content_address) is False

    def test_evict_keeps_blob_shared_with_other_execution(self, artifact_store: ArtifactStore):
        a = artifact_store.put("ex-1", "Source", "source", b"same-bytes")
        b = artifact_store.put("ex-2", "Source", "source", b"same-bytes")
        artifact_store.evict("ex-1")
        assert artifact_store.get(b) == b"same-bytes"
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.get(a)

    def test_retained_execution_survives_eviction(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Source", "source", b"audit me")
        artifact_store.retain("ex-1")
        assert artifact_store.is_retained("ex-1")
        assert artifact_store.evict("ex-1") == 0
        assert artifact_store.get(ref) == b"audit me"

    def test_retained_artifacts_survive_reopen(self, tmp_dir):
        store = ArtifactStore(tmp_dir / "audit")
        ref = store.put("ex-1", "Build", "imagedefinitions", b"[]", action_name="docker")
        store.retain("ex-1")
        store.evict("ex-1")

        reopened = ArtifactStore(tmp_dir / "audit")
        assert reopened.is_retained("ex-1")
        assert reopened.find("ex-1", "imagedefinitions") == ref
        assert reopened.get(ref) == b"[]"

    def test_evicted_artifacts_stay_gone_after_reopen(self, tmp_dir):
        store = ArtifactStore(tmp_dir / "scratch")
        ref = store.put("ex-1", "Source", "source", b"short-lived")
        store.evict("ex-1")

        reopened = ArtifactStore(tmp_dir / "scratch")
        assert reopened.list_refs("ex-1") == []
        with pytest.raises(ArtifactNotFoundError):
            reopened.get(ref)

    def test_verify(self, artifact_store: ArtifactStore):
        ref = artifact_store.put("ex-1", "Source", "source", b"verify me")
        assert artifact_store.verify(ref.content_address) is True
        assert artifact_store.verify("sha256:" + "0" * 64) is False


class TestManifests:
    def test_manifest_is_canonical(self):
        assert encode_manifest({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_decode_manifest(self):
        defs = [{"name": "app", "imageUri": "registry.local/app@sha256:abc"}]
        assert decode_manifest(encode_manifest(defs)) == defs
