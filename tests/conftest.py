from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from text2splat.clients.veo_client import VideoPoll
from text2splat.config import PipelineConfig, RetryPolicy
from text2splat.errors import StageError
from text2splat.models import Frame, FrameSet
from text2splat.orchestrator import PipelineOrchestrator
from text2splat.runner import CancelToken
from text2splat.viewer import ViewerLauncher

FAKE_MP4 = b"\x00\x00\x00\x18ftypmp42" + bytes(64)
FAKE_JPEG = b"\xff\xd8\xff\xe0" + bytes(64)
FAKE_PLY = b"ply\nformat binary_little_endian 1.0\nelement vertex 0\nend_header\n"


class FakeVideoClient:
    def __init__(
        self,
        *,
        pending_polls: int = 0,
        fail_reason: Optional[str] = None,
        submit_errors: Optional[List[StageError]] = None,
        poll_errors: Optional[List[StageError]] = None,
        content: bytes = FAKE_MP4,
        on_poll: Optional[Callable[[int], None]] = None,
    ):
        self.pending_polls = pending_polls
        self.fail_reason = fail_reason
        self.submit_errors = list(submit_errors or [])
        self.poll_errors = list(poll_errors or [])
        self.content = content
        self.on_poll = on_poll
        self.prompts: List[str] = []
        self.submits = 0
        self.polls = 0
        self.downloads = 0

    def submit(self, prompt, options=None):
        self.submits += 1
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.prompts.append(prompt)
        return f"operations/op-{self.submits}"

    def poll(self, handle):
        self.polls += 1
        if self.on_poll:
            self.on_poll(self.polls)
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        if self.polls <= self.pending_polls:
            return VideoPoll(state="pending")
        if self.fail_reason:
            return VideoPoll(state="failed", reason=self.fail_reason)
        return VideoPoll(state="ready", video_uri="https://video.test/files/video.mp4")

    def download(self, uri, dest: Path):
        self.downloads += 1
        dest.write_bytes(self.content)
        return dest

    def close(self):
        pass


class FakeExtractor:
    def __init__(self, *, error: Optional[StageError] = None):
        self.error = error
        self.calls = 0

    def extract(self, video, policy, out_dir: Path, *, on_progress=None):
        self.calls += 1
        if self.error:
            raise self.error
        n = policy.fixed_count or 3
        frames = []
        for i in range(n):
            name = f"frame_{i:04d}.jpg"
            (out_dir / name).write_bytes(FAKE_JPEG)
            frames.append(Frame(index=i, frame_number=i * 30, timestamp_s=float(i), path=name))
            if on_progress:
                on_progress(i + 1, n)
        return FrameSet(frames=frames, interval_s=1.0, source_fps=30.0, source_duration_s=float(n))


class FakeReconClient:
    def __init__(self, *, ready: Optional[List[bool]] = None, content: bytes = FAKE_PLY):
        # Last value repeats once the list is exhausted.
        self.ready = list(ready or [True])
        self.content = content
        self.probes = 0
        self.uploads: List[List[Path]] = []

    def check_ready(self):
        self.probes += 1
        return self.ready.pop(0) if len(self.ready) > 1 else self.ready[0]

    def reconstruct(self, frame_paths, dest: Path):
        self.uploads.append([Path(p) for p in frame_paths])
        dest.write_bytes(self.content)
        return dest

    def close(self):
        pass


class FakeOptimizer:
    def __init__(self, rewritten: str):
        self.rewritten = rewritten
        self.calls = 0

    def optimize_or_keep(self, prompt):
        self.calls += 1
        return self.rewritten


@pytest.fixture
def cfg(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        out_dir=tmp_path / "runs",
        optimize_prompt=False,
        poll_interval_s=0.0,
        max_polls=5,
        launch_viewer=False,
        retry=RetryPolicy(max_attempts=3, backoff_s=0.0, backoff_cap_s=0.0, attempt_timeout_s=5.0),
    )


@pytest.fixture
def make_orch(cfg):
    def _make(
        *,
        config: Optional[PipelineConfig] = None,
        video: Optional[FakeVideoClient] = None,
        extractor: Optional[FakeExtractor] = None,
        recon: Optional[FakeReconClient] = None,
        optimizer: Optional[FakeOptimizer] = None,
        cancel: Optional[CancelToken] = None,
        emit=None,
    ) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            config or cfg,
            video_client=video or FakeVideoClient(),
            prompt_optimizer=optimizer,
            frame_extractor=extractor or FakeExtractor(),
            recon_client=recon or FakeReconClient(),
            viewer=ViewerLauncher(launch=False),
            emit=emit,
            cancel=cancel,
        )

    return _make
