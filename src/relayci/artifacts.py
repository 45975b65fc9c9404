# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import re
import shutil
import tarfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ArtifactExistsError, ArtifactNotFoundError, RelayError

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# Run-scoped, identity-addressed blobs:
#
#   root/
#     <run_id>/
#       <name>.blob            raw bytes (tar.gz when produced from a path)
#       <name>.manifest.json   producer, sha256, size, kind, created_at
#
# A (run_id, name) pair is written exactly once. Whole run directories
# become eligible for gc() once older than the retention window.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".relayci/artifacts"
DEFAULT_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]*$")


@dataclass(frozen=True)
class ArtifactHandle:
    run_id: str
    name: str

    def __str__(self) -> str:
        return f"{self.run_id}/{self.name}"

    @classmethod
    def parse(cls, text: str) -> "ArtifactHandle":
        run_id, sep, name = text.partition("/")
        if not sep or not run_id or not name:
            raise ValueError(f"Invalid artifact handle: {text!r}")
        return cls(run_id=run_id, name=name)


@dataclass(frozen=True)
class ArtifactInfo:
    run_id: str
    name: str
    producer: Optional[str]
    sha256: str
    size: int
    kind: str  # "bytes" | "archive"
    created_at: float

    @property
    def handle(self) -> ArtifactHandle:
        return ArtifactHandle(self.run_id, self.name)


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def archive_path(src: Path, *, excludes: Optional[List[str]] = None, defaults: bool = True) -> bytes:
    """
    Pack a file or directory into tar.gz bytes. Directory contents are stored
    relative to the directory itself so extraction lands them under the
    chosen destination. `defaults=False` skips DEFAULT_EXCLUDES.
    """
    exclude_globs = (list(DEFAULT_EXCLUDES) if defaults else []) + list(excludes or [])
    src = src.resolve()
    if not src.exists():
        raise ArtifactNotFoundError(f"Artifact source path does not exist: {src}", details={"path": str(src)})

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if src.is_file():
            tar.add(str(src), arcname=src.name, recursive=False)
        else:
            for f in _iter_files_under(src):
                rel = f.relative_to(src).as_posix()
                if _matches_any_glob(rel, exclude_globs):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()


def _safe_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    dest = dest.resolve()
    members = []
    for m in tar.getmembers():
        target = (dest / m.name).resolve()
        if dest != target and dest not in target.parents:
            raise RelayError(f"Refusing to extract {m.name!r} outside {dest}")
        if m.issym() or m.islnk():
            continue
        members.append(m)
    return members


def unpack_archive(data: bytes, dest: Path) -> Path:
    """Unpack tar.gz bytes from `archive_path` under `dest`."""
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        tar.extractall(path=str(dest), members=_safe_members(tar, dest))
    return dest


class ArtifactStore:
    """
    File-based artifact store, safe to share between job worker threads.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _run_dir(self, run_id: str) -> Path:
        return self.root / run_id

    def blob_path(self, handle: ArtifactHandle) -> Path:
        return self._run_dir(handle.run_id) / f"{handle.name}.blob"

    def manifest_path(self, handle: ArtifactHandle) -> Path:
        return self._run_dir(handle.run_id) / f"{handle.name}.manifest.json"

    # ---- write ----

    def put(
        self,
        run_id: str,
        name: str,
        content: bytes,
        *,
        producer: Optional[str] = None,
        kind: str = "bytes",
    ) -> ArtifactHandle:
        """Store `content` once under (run_id, name) and return its handle."""
        if not _NAME.match(name):
            raise RelayError(f"Invalid artifact name: {name!r}")
        handle = ArtifactHandle(run_id=run_id, name=name)
        info = ArtifactInfo(
            run_id=run_id,
            name=name,
            producer=producer,
            sha256=_sha256_bytes(content),
            size=len(content),
            kind=kind,
            created_at=time.time(),
        )

        with self._lock:
            blob = self.blob_path(handle)
            man = self.manifest_path(handle)
            if man.exists():
                raise ArtifactExistsError(
                    f"Artifact '{name}' already exists for run {run_id}",
                    details={"handle": str(handle)},
                )
            blob.parent.mkdir(parents=True, exist_ok=True)

            # Write to tmp then atomic rename; the manifest lands last and marks completeness
            tmp = blob.with_suffix(".blob.tmp")
            try:
                tmp.write_bytes(content)
                tmp.replace(blob)
                man.write_text(json.dumps(asdict(info), sort_keys=True, indent=2), encoding="utf-8")
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)

        return handle

    def put_path(
        self,
        run_id: str,
        name: str,
        path: str | Path,
        *,
        producer: Optional[str] = None,
        excludes: Optional[List[str]] = None,
    ) -> ArtifactHandle:
        return self.put(run_id, name, archive_path(Path(path), excludes=excludes), producer=producer, kind="archive")

    # ---- read ----

    def info(self, handle: ArtifactHandle) -> ArtifactInfo:
        man = self.manifest_path(handle)
        if not man.exists():
            raise ArtifactNotFoundError(f"Artifact '{handle}' not found", details={"handle": str(handle)})
        return ArtifactInfo(**json.loads(man.read_text(encoding="utf-8")))

    def get(self, handle: ArtifactHandle) -> bytes:
        info = self.info(handle)
        blob = self.blob_path(handle)
        if not blob.exists():
            raise ArtifactNotFoundError(f"Artifact '{handle}' has no content", details={"handle": str(handle)})
        data = blob.read_bytes()
        if _sha256_bytes(data) != info.sha256:
            raise RelayError(f"Artifact '{handle}' is corrupt (sha256 mismatch)")
        return data

    def find(self, run_id: str, name: str) -> ArtifactHandle:
        handle = ArtifactHandle(run_id=run_id, name=name)
        if not self.manifest_path(handle).exists():
            raise ArtifactNotFoundError(
                f"Artifact '{name}' was never produced in run {run_id}",
                details={"run_id": run_id, "name": name},
            )
        return handle

    def extract(self, handle: ArtifactHandle, dest: str | Path) -> Path:
        """Restore an artifact into `dest`: archives are unpacked, raw blobs written as a file."""
        info = self.info(handle)
        data = self.get(handle)
        dest_p = Path(dest)
        if info.kind == "archive":
            unpack_archive(data, dest_p)
        else:
            if dest_p.is_dir():
                dest_p = dest_p / handle.name
            dest_p.parent.mkdir(parents=True, exist_ok=True)
            dest_p.write_bytes(data)
        return dest_p

    def list_artifacts(self, run_id: str) -> List[ArtifactInfo]:
        d = self._run_dir(run_id)
        if not d.exists():
            return []
        return [
            ArtifactInfo(**json.loads(p.read_text(encoding="utf-8")))
            for p in sorted(d.glob("*.manifest.json"))
        ]

    def list_runs(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    # ---- retention ----

    def gc(self, retention_seconds: float, *, now: Optional[float] = None) -> List[str]:
        """
        Delete run directories whose newest artifact is older than the window.
        Returns the removed run ids.
        """
        now = time.time() if now is None else now
        removed: List[str] = []
        with self._lock:
            for run_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
                stamps: Dict[str, float] = {
                    m.name: json.loads(m.read_text(encoding="utf-8")).get("created_at", 0.0)
                    for m in run_dir.glob("*.manifest.json")
                }
                newest = max(stamps.values(), default=run_dir.stat().st_mtime)
                if now - newest >= retention_seconds:
                    shutil.rmtree(run_dir)
                    removed.append(run_dir.name)
        return removed
