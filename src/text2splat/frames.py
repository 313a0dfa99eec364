from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from .config import SamplingPolicy
from .errors import ErrorKind, StageError
from .logging import get_logger
from .models import Frame, FrameSet

logger = get_logger("frames")

_EPS = 1e-6


@dataclass(frozen=True)
class VideoInfo:
    fps: float
    frame_count: int
    width: int
    height: int

    @property
    def duration_s(self) -> float:
        return self.frame_count / self.fps


def probe_video(path: Path) -> VideoInfo:
    cap = cv2.VideoCapture(str(path))
    try:
        if not cap.isOpened():
            raise StageError(ErrorKind.EXTRACTION, f"cannot open video {path}")
        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
    finally:
        cap.release()
    if fps <= 0 or count <= 0:
        raise StageError(ErrorKind.EXTRACTION, f"cannot determine length of video {path} (fps={fps}, frames={count})")
    return VideoInfo(fps=fps, frame_count=count, width=width, height=height)


def plan_timestamps(policy: SamplingPolicy, info: VideoInfo) -> List[Tuple[float, int]]:
    """
    Resolve a sampling policy to ``(timestamp_s, frame_number)`` pairs.

    Raises ExtractionError instead of returning fewer frames than requested.
    """
    policy.check()
    duration = info.duration_s

    if policy.fixed_count is not None:
        n = policy.fixed_count
        times = [0.0] if n == 1 else [float(t) for t in np.linspace(0.0, duration, n)]
    elif policy.fixed_interval_s is not None:
        step = policy.fixed_interval_s
        if duration + _EPS < step:
            raise StageError(
                ErrorKind.EXTRACTION,
                f"video is {duration:.2f}s long, shorter than the {step:g}s sampling interval",
            )
        n = int(math.floor(duration / step + _EPS)) + 1
        times = [i * step for i in range(n)]
    else:
        times = [float(t) for t in policy.timestamps or []]
        late = [t for t in times if t > duration + _EPS]
        if late:
            raise StageError(
                ErrorKind.EXTRACTION,
                f"timestamps {late} are past the end of the {duration:.2f}s video",
            )

    plan = [(t, min(int(round(t * info.fps)), info.frame_count - 1)) for t in times]
    numbers = [n for _, n in plan]
    if any(b <= a for a, b in zip(numbers, numbers[1:])):
        raise StageError(
            ErrorKind.EXTRACTION,
            f"video has {info.frame_count} frames at {info.fps:g} fps; too short for {policy.describe()}",
        )
    return plan


def _interval_for(policy: SamplingPolicy, plan: List[Tuple[float, int]]) -> Optional[float]:
    if policy.fixed_interval_s is not None:
        return policy.fixed_interval_s
    if policy.fixed_count is not None and len(plan) > 1:
        return plan[1][0] - plan[0][0]
    return None


class FrameExtractor:
    """
    Decodes keyframes from a video according to a SamplingPolicy.

    Each frame is decoded by its own capture so frames can be grabbed in
    parallel; results are reassembled in timestamp order.
    """

    def __init__(self, *, workers: int = 4, jpeg_quality: int = 95):
        self.workers = max(1, int(workers))
        self.jpeg_quality = jpeg_quality

    def extract(
        self,
        video: Path,
        policy: SamplingPolicy,
        out_dir: Path,
        *,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> FrameSet:
        policy.check()
        video = Path(video)
        info = probe_video(video)
        plan = plan_timestamps(policy, info)
        out_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "[frames] %s: %.2fs @ %g fps, sampling %s -> %d frames",
            video.name,
            info.duration_s,
            info.fps,
            policy.describe(),
            len(plan),
        )

        total = len(plan)
        done = 0
        frames: List[Frame] = []
        with ThreadPoolExecutor(max_workers=min(self.workers, total)) as ex:
            futures = [
                ex.submit(self._grab, video, i, t, number, out_dir)
                for i, (t, number) in enumerate(plan)
            ]
            for fut in futures:
                frames.append(fut.result())
                done += 1
                if on_progress:
                    on_progress(done, total)

        frames.sort(key=lambda f: f.timestamp_s)
        return FrameSet(
            frames=frames,
            interval_s=_interval_for(policy, plan),
            source_fps=info.fps,
            source_duration_s=info.duration_s,
        )

    def _grab(self, video: Path, index: int, timestamp_s: float, number: int, out_dir: Path) -> Frame:
        cap = cv2.VideoCapture(str(video))
        try:
            cap.set(cv2.CAP_PROP_POS_FRAMES, number)
            ok, bgr = cap.read()
        finally:
            cap.release()
        if not ok or bgr is None:
            raise StageError(
                ErrorKind.EXTRACTION,
                f"failed to decode frame {number} ({timestamp_s:.2f}s) of {video.name}",
            )

        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        name = f"frame_{index:04d}.jpg"
        Image.fromarray(np.ascontiguousarray(rgb)).save(out_dir / name, format="JPEG", quality=self.jpeg_quality)
        logger.debug("[frames] saved %s at %.2fs (frame %d)", name, timestamp_s, number)
        return Frame(index=index, frame_number=number, timestamp_s=timestamp_s, path=name)
