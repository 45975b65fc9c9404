"""Tests for relayci.artifacts."""

from __future__ import annotations

import json

import pytest

from relayci.artifacts import ArtifactHandle, ArtifactStore, archive_path, unpack_archive
from relayci.errors import ArtifactExistsError, ArtifactNotFoundError, RelayError


class TestPutGet:
    def test_round_trip_bytes(self, artifact_store):
        handle = artifact_store.put("run1", "report.txt", b"ok\n", producer="test")
        assert str(handle) == "run1/report.txt"
        assert artifact_store.get(handle) == b"ok\n"
        info = artifact_store.info(handle)
        assert info.producer == "test"
        assert info.size == 3
        assert info.kind == "bytes"

    def test_write_once(self, artifact_store):
        artifact_store.put("run1", "dist", b"v1")
        with pytest.raises(ArtifactExistsError):
            artifact_store.put("run1", "dist", b"v2")
        assert artifact_store.get(ArtifactHandle("run1", "dist")) == b"v1"

    def test_same_name_in_other_run_is_independent(self, artifact_store):
        artifact_store.put("run1", "dist", b"v1")
        artifact_store.put("run2", "dist", b"v2")
        assert artifact_store.get(ArtifactHandle("run2", "dist")) == b"v2"

    def test_unknown_handle(self, artifact_store):
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.get(ArtifactHandle("run1", "missing"))
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.find("run1", "missing")

    def test_invalid_name(self, artifact_store):
        with pytest.raises(RelayError):
            artifact_store.put("run1", "../escape", b"x")

    def test_corruption_is_detected(self, artifact_store):
        handle = artifact_store.put("run1", "dist", b"original")
        artifact_store.blob_path(handle).write_bytes(b"tampered")
        with pytest.raises(RelayError, match="corrupt"):
            artifact_store.get(handle)

    def test_handle_parse(self):
        assert ArtifactHandle.parse("abc/build-artifacts") == ArtifactHandle("abc", "build-artifacts")
        with pytest.raises(ValueError):
            ArtifactHandle.parse("no-slash")


class TestPaths:
    def test_directory_round_trip(self, artifact_store, tmp_path):
        src = tmp_path / "dist"
        (src / "sub").mkdir(parents=True)
        (src / "app.bin").write_text("binary")
        (src / "sub" / "notes.txt").write_text("notes")
        (src / "__pycache__").mkdir()
        (src / "__pycache__" / "x.pyc").write_text("skip")

        handle = artifact_store.put_path("run1", "build-artifacts", src, producer="build")
        dest = artifact_store.extract(handle, tmp_path / "restored")

        assert (dest / "app.bin").read_text() == "binary"
        assert (dest / "sub" / "notes.txt").read_text() == "notes"
        assert not (dest / "__pycache__").exists()
        assert artifact_store.info(handle).kind == "archive"

    def test_single_file_round_trip(self, artifact_store, tmp_path):
        src = tmp_path / "coverage.xml"
        src.write_text("<coverage/>")
        handle = artifact_store.put_path("run1", "coverage", src)
        dest = artifact_store.extract(handle, tmp_path / "out")
        assert (dest / "coverage.xml").read_text() == "<coverage/>"

    def test_snapshot_keeps_default_excludes(self, tmp_path):
        src = tmp_path / "ws"
        (src / ".git").mkdir(parents=True)
        (src / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (src / "app.txt").write_text("hello")

        dest = unpack_archive(archive_path(src, defaults=False), tmp_path / "restored")
        assert (dest / ".git" / "HEAD").exists()
        assert (dest / "app.txt").read_text() == "hello"
        assert not (unpack_archive(archive_path(src), tmp_path / "default") / ".git").exists()

    def test_missing_source_path(self, artifact_store, tmp_path):
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.put_path("run1", "dist", tmp_path / "absent")

    def test_listing(self, artifact_store):
        artifact_store.put("run1", "b", b"2")
        artifact_store.put("run1", "a", b"1")
        assert [i.name for i in artifact_store.list_artifacts("run1")] == ["a", "b"]
        assert artifact_store.list_artifacts("unknown") == []
        assert artifact_store.list_runs() == ["run1"]


class TestRetention:
    def _age(self, store: ArtifactStore, handle: ArtifactHandle, created_at: float) -> None:
        man = store.manifest_path(handle)
        data = json.loads(man.read_text())
        data["created_at"] = created_at
        man.write_text(json.dumps(data))

    def test_gc_removes_only_expired_runs(self, artifact_store):
        old = artifact_store.put("old-run", "dist", b"x")
        new = artifact_store.put("new-run", "dist", b"y")
        self._age(artifact_store, old, 1_000.0)
        self._age(artifact_store, new, 9_000.0)

        removed = artifact_store.gc(retention_seconds=5_000, now=10_000.0)

        assert removed == ["old-run"]
        assert artifact_store.list_runs() == ["new-run"]

    def test_newest_artifact_keeps_the_run(self, artifact_store):
        a = artifact_store.put("run1", "a", b"x")
        b = artifact_store.put("run1", "b", b"y")
        self._age(artifact_store, a, 1_000.0)
        self._age(artifact_store, b, 9_000.0)
        assert artifact_store.gc(retention_seconds=5_000, now=10_000.0) == []
