from __future__ import annotations

import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind, StageError


class JobStage(str, Enum):
    INIT = "init"
    GENERATING_VIDEO = "generating_video"
    EXTRACTING_FRAMES = "extracting_frames"
    RECONSTRUCTING = "reconstructing"
    VIEWING = "viewing"
    DONE = "done"


STAGE_ORDER: List[JobStage] = [
    JobStage.INIT,
    JobStage.GENERATING_VIDEO,
    JobStage.EXTRACTING_FRAMES,
    JobStage.RECONSTRUCTING,
    JobStage.VIEWING,
    JobStage.DONE,
]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"



class ArtifactKind(str, Enum):
    VIDEO = "video"
    FRAME_SET = "frame_set"
    POINT_CLOUD = "point_cloud"


# Each artifact kind may only be written by the stage that produces it.
ARTIFACT_OWNER: Dict[ArtifactKind, JobStage] = {
    ArtifactKind.VIDEO: JobStage.GENERATING_VIDEO,
    ArtifactKind.FRAME_SET: JobStage.EXTRACTING_FRAMES,
    ArtifactKind.POINT_CLOUD: JobStage.RECONSTRUCTING,
}


def stage_index(stage: JobStage) -> int:
    return STAGE_ORDER.index(stage)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    stage: JobStage
    attempts: int = 0
    retryable: bool = False


class PipelineJob(BaseModel):
    """State of one end-to-end run; the only mutable pipeline state."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    prompt: str
    stage: JobStage = JobStage.INIT
    status: JobStatus = JobStatus.PENDING
    attempts: Dict[str, int] = Field(default_factory=dict)
    artifacts: Dict[ArtifactKind, str] = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at_ms: int = Field(default_factory=_now_ms)
    updated_at_ms: int = Field(default_factory=_now_ms)

    def touch(self) -> None:
        self.updated_at_ms = _now_ms()

    def advance(self, stage: JobStage) -> None:
        if stage_index(stage) < stage_index(self.stage):
            raise ValueError(f"stage cannot move backward: {self.stage.value} -> {stage.value}")
        if stage != self.stage:
            self.attempts = {}
        self.stage = stage
        self.touch()

    def restart_at(self, stage: JobStage) -> None:
        """Explicit restart: rewind to ``stage`` and drop artifacts it and later stages own."""
        for kind, owner in ARTIFACT_OWNER.items():
            if stage_index(owner) >= stage_index(stage):
                self.artifacts.pop(kind, None)
        self.stage = stage
        self.attempts = {}
        self.touch()

    def record_artifact(self, kind: ArtifactKind, location: str) -> None:
        owner = ARTIFACT_OWNER[kind]
        if owner != self.stage:
            raise ValueError(f"stage {self.stage.value} cannot write artifact {kind.value}")
        if kind in self.artifacts:
            raise ValueError(f"artifact {kind.value} already recorded for job {self.id}")
        self.artifacts[kind] = location
        self.touch()

    def record_attempt(self, attempt: int) -> None:
        self.attempts[self.stage.value] = attempt
        self.touch()

    def record_error(self, error: StageError, *, attempts: int) -> None:
        self.error = ErrorInfo(
            kind=error.kind,
            message=error.message,
            stage=self.stage,
            attempts=attempts,
            retryable=error.retryable,
        )
        self.touch()


class Checkpoint(BaseModel):
    version: int = 1
    saved_at_ms: int = Field(default_factory=_now_ms)
    job: PipelineJob


class Frame(BaseModel):
    index: int
    frame_number: int
    timestamp_s: float
    path: str


class FrameSet(BaseModel):
    """Ordered keyframes; order is the camera path and must be preserved."""

    frames: List[Frame]
    interval_s: Optional[float] = None
    source_fps: float
    source_duration_s: float

    def resolve_paths(self, base_dir: Path) -> List[Path]:
        return [base_dir / f.path for f in self.frames]

    @property
    def timestamps(self) -> List[float]:
        return [f.timestamp_s for f in self.frames]

    def __len__(self) -> int:
        return len(self.frames)
