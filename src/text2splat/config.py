from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ErrorKind, StageError

DEFAULT_VIDEO_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
API_KEY_ENV = "GEMINI_API_KEY"


class RetryPolicy(BaseModel):
    """Attempt ceiling, exponential backoff and per-attempt timeout for one stage."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_s: float = Field(default=2.0, ge=0.0)
    backoff_cap_s: float = Field(default=60.0, ge=0.0)
    # None disables the per-attempt timeout (the step runs inline).
    attempt_timeout_s: Optional[float] = Field(default=120.0, gt=0.0)

    # Rate limits get a longer wait but fewer tries.
    quota_max_attempts: int = Field(default=3, ge=1)
    quota_backoff_factor: float = Field(default=4.0, ge=1.0)


class SamplingPolicy(BaseModel):
    """
    How keyframes are sampled from the generated video.

    Exactly one option must be set:
      - fixed_count: N evenly spaced frames from the first to the last frame
      - fixed_interval_s: one frame every T seconds starting at 0
      - timestamps: explicit, strictly increasing list of seconds
    """

    fixed_count: Optional[int] = None
    fixed_interval_s: Optional[float] = None
    timestamps: Optional[List[float]] = None

    def check(self) -> None:
        chosen = [
            name
            for name, value in (
                ("fixed_count", self.fixed_count),
                ("fixed_interval_s", self.fixed_interval_s),
                ("timestamps", self.timestamps),
            )
            if value is not None
        ]
        if len(chosen) != 1:
            raise StageError(
                ErrorKind.CONFIG,
                "sampling policy needs exactly one of fixed_count, fixed_interval_s, timestamps "
                f"(got {', '.join(chosen) or 'none'})",
            )
        if self.fixed_count is not None and self.fixed_count < 1:
            raise StageError(ErrorKind.CONFIG, "fixed_count must be >= 1")
        if self.fixed_interval_s is not None and self.fixed_interval_s <= 0:
            raise StageError(ErrorKind.CONFIG, "fixed_interval_s must be > 0")
        if self.timestamps is not None:
            ts = list(self.timestamps)
            if not ts:
                raise StageError(ErrorKind.CONFIG, "timestamps must not be empty")
            if any(t < 0 for t in ts):
                raise StageError(ErrorKind.CONFIG, "timestamps must be non-negative")
            if any(b <= a for a, b in zip(ts, ts[1:])):
                raise StageError(ErrorKind.CONFIG, "timestamps must be strictly increasing")

    def describe(self) -> str:
        if self.fixed_count is not None:
            return f"fixed_count={self.fixed_count}"
        if self.fixed_interval_s is not None:
            return f"fixed_interval={self.fixed_interval_s}s"
        if self.timestamps is not None:
            return "timestamps=" + ",".join(f"{t:g}" for t in self.timestamps)
        return "unset"


class PipelineConfig(BaseModel):
    """
    Configuration for the text -> 3DGS pipeline.

    Secrets are not stored here; they are resolved from environment variables at runtime:
      - GEMINI_API_KEY (video generation + prompt optimisation)
    """

    out_dir: Path = Field(default=Path("runs"))

    # Video generation (Veo via the Gemini API)
    video_base_url: str = Field(default=DEFAULT_VIDEO_BASE_URL)
    video_model: str = Field(default="veo-2.0-generate-001")
    aspect_ratio: str = Field(default="16:9")
    person_generation: str = Field(default="allow_all")
    sample_count: int = Field(default=1, ge=1)
    duration_seconds: int = Field(default=5, ge=1)
    generation_params: Dict[str, Any] = Field(default_factory=dict)
    poll_interval_s: float = Field(default=6.0, ge=0.0)
    max_polls: int = Field(default=100, ge=1)
    http_timeout_s: float = Field(default=60.0, gt=0.0)

    # Prompt rewrite before submission
    optimize_prompt: bool = True
    prompt_model: str = Field(default="gemini-2.5-flash")
    prompt_temperature: float = Field(default=1.4)
    prompt_top_p: float = Field(default=0.9)

    # Keyframe extraction
    sampling: SamplingPolicy = Field(default_factory=lambda: SamplingPolicy(fixed_count=6))
    frame_workers: int = Field(default=4, ge=1, le=32)
    jpeg_quality: int = Field(default=95, ge=1, le=100)

    # Reconstruction server
    recon_base_url: str = Field(default="http://localhost:8888")
    recon_upload_path: str = Field(default="/reconstruction")
    recon_health_path: str = Field(default="/health")
    recon_field_name: str = Field(default="images")
    recon_min_frames: int = Field(default=2, ge=1)
    recon_timeout_s: float = Field(default=600.0, gt=0.0)

    # Retry/backoff
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    stage_retry: Dict[str, RetryPolicy] = Field(default_factory=dict)

    # Viewer/trainer handoff
    viewer_executable: Optional[str] = None
    viewer_args: List[str] = Field(default_factory=lambda: ["--with-viewer"])
    viewer_hint: str = Field(default="brush_app")
    launch_viewer: bool = True

    @field_validator("recon_upload_path", "recon_health_path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else "/" + v

    @model_validator(mode="after")
    def _sampling_is_valid(self) -> "PipelineConfig":
        self.sampling.check()
        return self

    def retry_for(self, stage: str) -> RetryPolicy:
        return self.stage_retry.get(stage, self.retry)

    @staticmethod
    def require_env(*names: str) -> None:
        missing = [n for n in names if not os.getenv(n)]
        if missing:
            raise StageError(
                ErrorKind.AUTH,
                "Missing required environment variables: " + ", ".join(missing) + ".",
            )

    @classmethod
    def build(cls, **data: Any) -> "PipelineConfig":
        """Construct a config, reporting pydantic validation problems as ConfigError."""
        try:
            return cls(**data)
        except ValidationError as exc:
            raise StageError(ErrorKind.CONFIG, str(exc)) from exc

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineConfig":
        """
        Load config overrides from environment variables, then apply ``overrides``.

        Supported env vars (optional):
          - TEXT2SPLAT_OUT_DIR
          - TEXT2SPLAT_VIDEO_BASE_URL / TEXT2SPLAT_VIDEO_MODEL / TEXT2SPLAT_PROMPT_MODEL
          - TEXT2SPLAT_OPTIMIZE_PROMPT
          - TEXT2SPLAT_POLL_INTERVAL_S / TEXT2SPLAT_MAX_POLLS
          - TEXT2SPLAT_FRAME_COUNT / TEXT2SPLAT_FRAME_INTERVAL_S / TEXT2SPLAT_FRAME_WORKERS
          - TEXT2SPLAT_RECON_URL
          - TEXT2SPLAT_MAX_ATTEMPTS / TEXT2SPLAT_BACKOFF_S / TEXT2SPLAT_ATTEMPT_TIMEOUT_S
          - TEXT2SPLAT_VIEWER
        """
        data: Dict[str, Any] = {}
        if os.getenv("TEXT2SPLAT_OUT_DIR"):
            data["out_dir"] = Path(os.environ["TEXT2SPLAT_OUT_DIR"])
        if os.getenv("TEXT2SPLAT_VIDEO_BASE_URL"):
            data["video_base_url"] = os.getenv("TEXT2SPLAT_VIDEO_BASE_URL")
        if os.getenv("TEXT2SPLAT_VIDEO_MODEL"):
            data["video_model"] = os.getenv("TEXT2SPLAT_VIDEO_MODEL")
        if os.getenv("TEXT2SPLAT_PROMPT_MODEL"):
            data["prompt_model"] = os.getenv("TEXT2SPLAT_PROMPT_MODEL")
        if os.getenv("TEXT2SPLAT_OPTIMIZE_PROMPT"):
            data["optimize_prompt"] = os.environ["TEXT2SPLAT_OPTIMIZE_PROMPT"].strip().lower() in {"1", "true", "yes", "on"}
        if os.getenv("TEXT2SPLAT_POLL_INTERVAL_S"):
            data["poll_interval_s"] = os.getenv("TEXT2SPLAT_POLL_INTERVAL_S")
        if os.getenv("TEXT2SPLAT_MAX_POLLS"):
            data["max_polls"] = os.getenv("TEXT2SPLAT_MAX_POLLS")
        if os.getenv("TEXT2SPLAT_FRAME_COUNT"):
            data["sampling"] = {"fixed_count": os.getenv("TEXT2SPLAT_FRAME_COUNT")}
        elif os.getenv("TEXT2SPLAT_FRAME_INTERVAL_S"):
            data["sampling"] = {"fixed_interval_s": os.getenv("TEXT2SPLAT_FRAME_INTERVAL_S")}
        if os.getenv("TEXT2SPLAT_FRAME_WORKERS"):
            data["frame_workers"] = os.getenv("TEXT2SPLAT_FRAME_WORKERS")
        if os.getenv("TEXT2SPLAT_RECON_URL"):
            data["recon_base_url"] = os.getenv("TEXT2SPLAT_RECON_URL")
        if os.getenv("TEXT2SPLAT_VIEWER"):
            data["viewer_executable"] = os.getenv("TEXT2SPLAT_VIEWER")

        retry: Dict[str, Any] = {}
        if os.getenv("TEXT2SPLAT_MAX_ATTEMPTS"):
            retry["max_attempts"] = os.getenv("TEXT2SPLAT_MAX_ATTEMPTS")
        if os.getenv("TEXT2SPLAT_BACKOFF_S"):
            retry["backoff_s"] = os.getenv("TEXT2SPLAT_BACKOFF_S")
        if os.getenv("TEXT2SPLAT_ATTEMPT_TIMEOUT_S"):
            retry["attempt_timeout_s"] = os.getenv("TEXT2SPLAT_ATTEMPT_TIMEOUT_S")
        if retry:
            data["retry"] = retry

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.build(**data)
