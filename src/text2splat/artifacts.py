from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .errors import ErrorKind, StageError
from .models import ArtifactKind, Checkpoint, FrameSet, PipelineJob
from .runner import current_attempt

CHECKPOINT_NAME = "checkpoint.json"
EVENTS_NAME = "events.jsonl"
FRAMES_MANIFEST = "frames.json"

# Stable relative locations inside a job directory.
ARTIFACT_PATHS = {
    ArtifactKind.VIDEO: "video/video.mp4",
    ArtifactKind.FRAME_SET: "frames",
    ArtifactKind.POINT_CLOUD: "recon/output.ply",
}

_VIDEO_MAGIC = (b"\x1a\x45\xdf\xa3",)  # Matroska / WebM
_JPEG_MAGIC = b"\xff\xd8\xff"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def _read_head(path: Path, n: int = 16) -> bytes:
    with path.open("rb") as f:
        return f.read(n)


@contextmanager
def _publishing(final: Path) -> Iterator[None]:
    attempt = current_attempt()
    if attempt is None:
        yield
        return
    with attempt.publishing() as live:
        if not live:
            raise StageError(ErrorKind.TIMEOUT, f"attempt was abandoned; discarding output for {final.name}")
        yield


def looks_like_video(path: Path) -> bool:
    if not path.is_file() or path.stat().st_size == 0:
        return False
    head = _read_head(path, 12)
    if head[4:8] == b"ftyp":
        return True
    if head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return True
    return head.startswith(_VIDEO_MAGIC)


def looks_like_image(path: Path) -> bool:
    if not path.is_file() or path.stat().st_size == 0:
        return False
    head = _read_head(path, 8)
    return head.startswith(_JPEG_MAGIC) or head.startswith(_PNG_MAGIC)


def looks_like_ply(path: Path) -> bool:
    if not path.is_file() or path.stat().st_size == 0:
        return False
    return _read_head(path, 3) == b"ply"


class ArtifactStore:
    """
    Per-job working directory: ``<root>/<job_id>/``.

    Owns persisted bytes and the checkpoint file; holds no job state between
    calls. Every write lands on a temporary path first and is moved into place,
    so a crash never leaves a partial artifact at its final path. Writes made
    from an attempt the runner has abandoned are discarded instead of moved.
    """

    def __init__(self, root: Path, job_id: str):
        if not job_id or os.sep in job_id or job_id in (".", ".."):
            raise StageError(ErrorKind.CONFIG, f"invalid job id: {job_id!r}")
        self.root = Path(root)
        self.job_id = job_id
        self.job_dir = self.root / job_id

    def ensure(self) -> "ArtifactStore":
        self.job_dir.mkdir(parents=True, exist_ok=True)
        return self

    def path(self, relpath: str) -> Path:
        p = self.job_dir / relpath
        p.parent.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def checkpoint_path(self) -> Path:
        return self.job_dir / CHECKPOINT_NAME

    @property
    def events_path(self) -> Path:
        return self.job_dir / EVENTS_NAME

    # -----------------------
    # Atomic writes
    # -----------------------
    @contextmanager
    def staged_file(self, relpath: str) -> Iterator[Path]:
        """Yield a temp path next to ``relpath``; on clean exit move it into place."""
        final = self.path(relpath)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{final.name}.", suffix=".part", dir=str(final.parent))
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            yield tmp
            with _publishing(final):
                os.replace(tmp, final)
        finally:
            if tmp.exists():
                tmp.unlink()

    @contextmanager
    def staged_dir(self, relpath: str) -> Iterator[Path]:
        """Yield a temp directory; on clean exit it replaces ``relpath`` as a whole."""
        final = self.job_dir / relpath
        final.parent.mkdir(parents=True, exist_ok=True)
        tmp = final.parent / f".{final.name}.{uuid.uuid4().hex[:8]}.part"
        tmp.mkdir()
        try:
            yield tmp
            with _publishing(final):
                if final.exists():
                    shutil.rmtree(final)
                os.replace(tmp, final)
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

    def write_bytes(self, relpath: str, data: bytes) -> Path:
        with self.staged_file(relpath) as tmp:
            tmp.write_bytes(data)
        return self.job_dir / relpath

    # -----------------------
    # Checkpoint
    # -----------------------
    def save_checkpoint(self, job: PipelineJob) -> Path:
        self.ensure()
        cp = Checkpoint(job=job)
        return self.write_bytes(CHECKPOINT_NAME, (cp.model_dump_json(indent=2) + "\n").encode("utf-8"))

    def load_checkpoint(self) -> PipelineJob:
        if not self.checkpoint_path.is_file():
            raise StageError(ErrorKind.CONFIG, f"no checkpoint for job {self.job_id} under {self.root}")
        try:
            cp = Checkpoint.model_validate_json(self.checkpoint_path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise StageError(ErrorKind.CONFIG, f"corrupt checkpoint {self.checkpoint_path}: {exc}") from exc
        if cp.job.id != self.job_id:
            raise StageError(ErrorKind.CONFIG, f"checkpoint job id {cp.job.id} does not match {self.job_id}")
        return cp.job

    # -----------------------
    # Frame sets
    # -----------------------
    def save_frame_manifest(self, frame_dir: Path, frame_set: FrameSet) -> Path:
        p = frame_dir / FRAMES_MANIFEST
        p.write_text(frame_set.model_dump_json(indent=2) + "\n", encoding="utf-8")
        return p

    def load_frame_set(self, location: Optional[str] = None) -> FrameSet:
        frame_dir = self.job_dir / (location or ARTIFACT_PATHS[ArtifactKind.FRAME_SET])
        manifest = frame_dir / FRAMES_MANIFEST
        try:
            return FrameSet.model_validate_json(manifest.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise StageError(ErrorKind.BAD_REQUEST, f"unreadable frame set at {frame_dir}: {exc}") from exc

    def frame_dir(self, location: Optional[str] = None) -> Path:
        return self.job_dir / (location or ARTIFACT_PATHS[ArtifactKind.FRAME_SET])

    # -----------------------
    # Integrity checks
    # -----------------------
    def is_valid(self, kind: ArtifactKind, location: str) -> bool:
        """Lightweight integrity check: non-empty and of the expected file type."""
        target = self.job_dir / location
        if kind == ArtifactKind.VIDEO:
            return looks_like_video(target)
        if kind == ArtifactKind.POINT_CLOUD:
            return looks_like_ply(target)
        if kind == ArtifactKind.FRAME_SET:
            if not (target / FRAMES_MANIFEST).is_file():
                return False
            try:
                frame_set = self.load_frame_set(location)
            except StageError:
                return False
            if len(frame_set) == 0:
                return False
            return all(looks_like_image(p) for p in frame_set.resolve_paths(target))
        return False


def list_jobs(root: Path) -> list[str]:
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if (p / CHECKPOINT_NAME).is_file())
