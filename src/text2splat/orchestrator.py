from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .artifacts import ARTIFACT_PATHS, ArtifactStore, looks_like_ply, looks_like_video
from .clients.prompt_client import PromptOptimizer
from .clients.recon_client import ReconstructionClient
from .clients.veo_client import GenerationOptions, VideoGenerationClient, VideoPoll
from .config import PipelineConfig, RetryPolicy
from .errors import ErrorKind, StageError
from .events import Emitter, JsonlEventLog, PipelineEvent, ThreadSafeEmitter, fan_out, noop_emitter, now_ns
from .frames import FrameExtractor
from .logging import get_logger
from .models import (
    ARTIFACT_OWNER,
    STAGE_ORDER,
    ArtifactKind,
    JobStage,
    JobStatus,
    PipelineJob,
    stage_index,
)
from .runner import CancelToken, StageResult, StageRunner
from .viewer import HandoffResult, ViewerLauncher

logger = get_logger("orchestrator")

ARTIFACT_ORDER: List[ArtifactKind] = [ArtifactKind.VIDEO, ArtifactKind.FRAME_SET, ArtifactKind.POINT_CLOUD]

# Weights for overall progress
STAGE_WEIGHTS: Dict[JobStage, float] = {
    JobStage.GENERATING_VIDEO: 0.55,
    JobStage.EXTRACTING_FRAMES: 0.10,
    JobStage.RECONSTRUCTING: 0.30,
    JobStage.VIEWING: 0.05,
}

StageOutput = Tuple[ArtifactKind, str]


@dataclass
class _JobContext:
    job: PipelineJob
    store: ArtifactStore
    emit: Emitter
    runner: StageRunner


class PipelineOrchestrator:
    """
    Drives one job through Init -> GeneratingVideo -> ExtractingFrames ->
    Reconstructing -> Viewing -> Done.

    Every external call goes through a StageRunner; a checkpoint is written
    after each stage transition and on every terminal failure or cancellation.
    Independent jobs need independent orchestrator instances only when they run
    concurrently, since the cancellation token is per instance.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        video_client: Optional[VideoGenerationClient] = None,
        prompt_optimizer: Optional[PromptOptimizer] = None,
        frame_extractor: Optional[FrameExtractor] = None,
        recon_client: Optional[ReconstructionClient] = None,
        viewer: Optional[ViewerLauncher] = None,
        emit: Optional[Emitter] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.cfg = config or PipelineConfig.from_env()
        self.cancel = cancel or CancelToken()
        self._emit = emit or noop_emitter
        self._video = video_client
        self._prompt = prompt_optimizer
        self._frames = frame_extractor
        self._recon = recon_client
        self._viewer = viewer
        self._owned: List[Any] = []

    # -----------------------
    # Collaborators (created lazily so a resumed, finished job touches no service)
    # -----------------------
    @property
    def video_client(self) -> VideoGenerationClient:
        if self._video is None:
            self._video = VideoGenerationClient(
                base_url=self.cfg.video_base_url,
                model=self.cfg.video_model,
                timeout_s=self.cfg.http_timeout_s,
            )
            self._owned.append(self._video)
        return self._video

    @property
    def prompt_optimizer(self) -> PromptOptimizer:
        if self._prompt is None:
            self._prompt = PromptOptimizer(
                base_url=self.cfg.video_base_url,
                model=self.cfg.prompt_model,
                temperature=self.cfg.prompt_temperature,
                top_p=self.cfg.prompt_top_p,
                timeout_s=self.cfg.http_timeout_s,
            )
            self._owned.append(self._prompt)
        return self._prompt

    @property
    def frame_extractor(self) -> FrameExtractor:
        if self._frames is None:
            self._frames = FrameExtractor(workers=self.cfg.frame_workers, jpeg_quality=self.cfg.jpeg_quality)
        return self._frames

    @property
    def recon_client(self) -> ReconstructionClient:
        if self._recon is None:
            self._recon = ReconstructionClient(
                base_url=self.cfg.recon_base_url,
                upload_path=self.cfg.recon_upload_path,
                health_path=self.cfg.recon_health_path,
                field_name=self.cfg.recon_field_name,
                min_frames=self.cfg.recon_min_frames,
                timeout_s=self.cfg.recon_timeout_s,
            )
            self._owned.append(self._recon)
        return self._recon

    @property
    def viewer(self) -> ViewerLauncher:
        if self._viewer is None:
            self._viewer = ViewerLauncher(
                executable=self.cfg.viewer_executable,
                args=self.cfg.viewer_args,
                hint=self.cfg.viewer_hint,
                launch=self.cfg.launch_viewer,
            )
        return self._viewer

    def close(self) -> None:
        for client in self._owned:
            client.close()
        self._owned.clear()

    def __enter__(self) -> "PipelineOrchestrator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -----------------------
    # Jobs
    # -----------------------
    def store_for(self, job_id: str) -> ArtifactStore:
        return ArtifactStore(self.cfg.out_dir, job_id)

    def create_job(self, prompt: str) -> PipelineJob:
        prompt = (prompt or "").strip()
        if not prompt:
            raise StageError(ErrorKind.CONFIG, "prompt must not be empty")
        job = PipelineJob(prompt=prompt)
        self.store_for(job.id).ensure().save_checkpoint(job)
        logger.info("[job] created %s in %s", job.id, self.store_for(job.id).job_dir)
        return job

    def load_job(self, job_id: str) -> PipelineJob:
        return self.store_for(job_id).load_checkpoint()

    def prepare_resume(self, job: PipelineJob) -> PipelineJob:
        """
        Re-enter at the checkpointed stage, or earlier if an artifact a
        completed stage produced is missing or fails its integrity check.
        """
        store = self.store_for(job.id)
        entry = job.stage
        for kind in ARTIFACT_ORDER:
            owner = ARTIFACT_OWNER[kind]
            if stage_index(owner) >= stage_index(entry):
                break
            location = job.artifacts.get(kind)
            if location is None or not store.is_valid(kind, location):
                logger.warning(
                    "[job] %s artifact %s is missing or invalid; redoing %s",
                    job.id,
                    kind.value,
                    owner.value,
                )
                entry = owner
                break

        job.restart_at(entry)
        if entry != JobStage.DONE:
            job.status = JobStatus.PENDING
        return job

    def plan(self, job: PipelineJob) -> List[JobStage]:
        """Stages a run of ``job`` would still execute, in order."""
        start = stage_index(job.stage)
        return [s for s in STAGE_ORDER[start:] if s not in (JobStage.INIT, JobStage.DONE)]

    def run_prompt(self, prompt: str) -> PipelineJob:
        return self.run(self.create_job(prompt))

    def resume(self, job_id: str) -> PipelineJob:
        job = self.prepare_resume(self.load_job(job_id))
        logger.info("[job] resuming %s at %s", job.id, job.stage.value)
        return self.run(job)

    def run(self, job: PipelineJob) -> PipelineJob:
        store = self.store_for(job.id).ensure()
        emit = ThreadSafeEmitter(fan_out(self._emit, JsonlEventLog(store.events_path)))
        runner = StageRunner(policy=self.cfg.retry, cancel=self.cancel, emit=emit, job_id=job.id)
        ctx = _JobContext(job=job, store=store, emit=emit, runner=runner)

        handlers: Dict[JobStage, Callable[[_JobContext], StageResult]] = {
            JobStage.GENERATING_VIDEO: self._generate_video,
            JobStage.EXTRACTING_FRAMES: self._extract_frames,
            JobStage.RECONSTRUCTING: self._reconstruct,
        }

        if job.stage == JobStage.DONE:
            return self._succeed(ctx)

        job.status = JobStatus.RUNNING
        self._status(ctx, f"running from {job.stage.value}")
        if job.stage == JobStage.INIT:
            job.advance(JobStage.GENERATING_VIDEO)
            store.save_checkpoint(job)

        while job.stage in handlers:
            if self.cancel.cancelled:
                return self._cancelled(ctx)
            stage = job.stage
            logger.info("[stage] %s …", stage.value)
            self._event(ctx, "progress", progress=0.0, message=f"{stage.value} started")

            result = handlers[stage](ctx)
            if result.cancelled:
                return self._cancelled(ctx)
            if not result.ok:
                return self._failed(ctx, result)

            kind, location = result.value
            job.record_artifact(kind, location)
            job.error = None
            self._event(ctx, "artifact", artifact={"kind": kind.value, "path": location})
            job.advance(STAGE_ORDER[stage_index(stage) + 1])
            job.status = JobStatus.RUNNING
            store.save_checkpoint(job)
            self._event(ctx, "progress", stage=stage, progress=1.0, message=f"{stage.value} done")
            self._overall(ctx)
            logger.info("[stage] %s ✓", stage.value)

        if job.stage == JobStage.VIEWING:
            if self.cancel.cancelled:
                return self._cancelled(ctx)
            handoff = self._view(ctx)
            job.metadata["handoff"] = handoff.to_dict()
            job.advance(JobStage.DONE)

        return self._succeed(ctx)

    def view_only(self, job_id: str) -> HandoffResult:
        """Hand an existing job's point cloud to the viewer without running any stage."""
        job = self.load_job(job_id)
        store = self.store_for(job_id)
        location = job.artifacts.get(ArtifactKind.POINT_CLOUD)
        if location is None or not store.is_valid(ArtifactKind.POINT_CLOUD, location):
            raise StageError(ErrorKind.CONFIG, f"job {job_id} has no valid point cloud yet; resume it first")
        return self.viewer.handoff(store.job_dir / location)

    # -----------------------
    # Stages
    # -----------------------
    def _generate_video(self, ctx: _JobContext) -> StageResult:
        job, store = ctx.job, ctx.store
        policy = self.cfg.retry_for(job.stage.value)

        prompt = job.metadata.get("generation_prompt")
        if not prompt:
            prompt = job.prompt
            if self.cfg.optimize_prompt:
                optimized = self._step(
                    ctx,
                    "optimize_prompt",
                    lambda: self.prompt_optimizer.optimize_or_keep(job.prompt),
                    policy.model_copy(update={"max_attempts": 1}),
                )
                if optimized.cancelled:
                    return optimized
                if optimized.ok and optimized.value:
                    prompt = optimized.value
            job.metadata["generation_prompt"] = prompt

        handle = job.metadata.get("video_handle")
        if not handle:
            options = GenerationOptions(
                aspect_ratio=self.cfg.aspect_ratio,
                person_generation=self.cfg.person_generation,
                sample_count=self.cfg.sample_count,
                duration_seconds=self.cfg.duration_seconds,
                extra=self.cfg.generation_params,
            )
            submitted = self._step(ctx, "submit", lambda: self.video_client.submit(prompt, options), policy)
            if not submitted.ok:
                return submitted
            handle = submitted.value
            job.metadata["video_handle"] = handle
            # Lets a resumed job re-attach instead of resubmitting.
            store.save_checkpoint(job)

        ready: Optional[VideoPoll] = None
        for n in range(1, self.cfg.max_polls + 1):
            polled = self._step(ctx, "poll", lambda: self.video_client.poll(handle), policy)
            if not polled.ok:
                if polled.error is not None and polled.error.kind in (ErrorKind.BAD_REQUEST, ErrorKind.GENERATION_FAILED):
                    # The operation is gone or rejected; resume must resubmit.
                    logger.warning("[video] dropping unusable operation %s: %s", handle, polled.error)
                    job.metadata.pop("video_handle", None)
                return polled
            status: VideoPoll = polled.value
            if status.ready:
                ready = status
                break
            if status.state == "failed":
                job.metadata.pop("video_handle", None)
                return StageResult.failure(
                    StageError(ErrorKind.GENERATION_FAILED, f"video generation failed: {status.reason}"),
                    attempts=n,
                )
            self._event(
                ctx,
                "log",
                step="poll",
                message=f"video not ready ({n}/{self.cfg.max_polls}); checking again in {self.cfg.poll_interval_s:g}s",
            )
            if self.cancel.wait(self.cfg.poll_interval_s):
                return StageResult.cancel(attempts=n)

        if ready is None:
            return StageResult.failure(
                StageError(
                    ErrorKind.TIMEOUT,
                    f"video not ready after {self.cfg.max_polls} polls",
                    retryable=False,
                ),
                attempts=self.cfg.max_polls,
            )

        relpath = ARTIFACT_PATHS[ArtifactKind.VIDEO]
        uri = ready.video_uri or ""

        def _download() -> StageOutput:
            with store.staged_file(relpath) as tmp:
                self.video_client.download(uri, tmp)
                if not looks_like_video(tmp):
                    raise StageError(ErrorKind.TRANSIENT_NETWORK, "downloaded file is not a recognised video container")
            return ArtifactKind.VIDEO, relpath

        return self._step(ctx, "download", _download, policy)

    def _extract_frames(self, ctx: _JobContext) -> StageResult:
        job, store = ctx.job, ctx.store
        video = store.job_dir / job.artifacts[ArtifactKind.VIDEO]
        relpath = ARTIFACT_PATHS[ArtifactKind.FRAME_SET]

        def _progress(done: int, total: int) -> None:
            self._event(ctx, "progress", step="extract", progress=done / max(1, total))

        def _extract() -> StageOutput:
            with store.staged_dir(relpath) as tmp:
                frame_set = self.frame_extractor.extract(video, self.cfg.sampling, tmp, on_progress=_progress)
                store.save_frame_manifest(tmp, frame_set)
            logger.info("[frames] %d frames at %s", len(frame_set), ", ".join(f"{t:g}s" for t in frame_set.timestamps))
            return ArtifactKind.FRAME_SET, relpath

        return self._step(ctx, "extract", _extract, self.cfg.retry_for(job.stage.value))

    def _reconstruct(self, ctx: _JobContext) -> StageResult:
        job, store = ctx.job, ctx.store
        policy = self.cfg.retry_for(job.stage.value)

        def _probe() -> bool:
            if not self.recon_client.check_ready():
                raise StageError(
                    ErrorKind.SERVER_UNAVAILABLE,
                    f"reconstruction backend at {self.cfg.recon_base_url} is not ready",
                )
            return True

        probed = self._step(ctx, "check_ready", _probe, policy)
        if not probed.ok:
            return probed

        frame_location = job.artifacts[ArtifactKind.FRAME_SET]
        relpath = ARTIFACT_PATHS[ArtifactKind.POINT_CLOUD]

        def _upload() -> StageOutput:
            frame_set = store.load_frame_set(frame_location)
            paths = frame_set.resolve_paths(store.frame_dir(frame_location))
            with store.staged_file(relpath) as tmp:
                self.recon_client.reconstruct(paths, tmp)
                if not looks_like_ply(tmp):
                    raise StageError(ErrorKind.TRANSIENT_NETWORK, "reconstruction response is not a PLY point cloud")
            return ArtifactKind.POINT_CLOUD, relpath

        # The upload itself may legitimately take as long as the server's own timeout.
        upload_policy = policy
        if policy.attempt_timeout_s is not None and policy.attempt_timeout_s < self.cfg.recon_timeout_s:
            upload_policy = policy.model_copy(update={"attempt_timeout_s": self.cfg.recon_timeout_s + 30.0})
        return self._step(ctx, "reconstruct", _upload, upload_policy)

    def _view(self, ctx: _JobContext) -> HandoffResult:
        ply = ctx.store.job_dir / ctx.job.artifacts[ArtifactKind.POINT_CLOUD]
        try:
            result = self.viewer.handoff(ply)
        except Exception as exc:
            # Viewing is best effort; reconstruction already succeeded.
            logger.warning("[viewer] handoff failed: %s", exc, exc_info=True)
            result = HandoffResult(outcome="deferred", command=self.viewer.command_for(ply), reason=str(exc))
        self._event(ctx, "status", message=f"viewer {result.outcome}: {result.command_line}")
        return result

    # -----------------------
    # Helpers
    # -----------------------
    def _step(self, ctx: _JobContext, step: str, fn: Callable[[], Any], policy: RetryPolicy) -> StageResult:
        job = ctx.job

        def on_attempt(n: int) -> None:
            job.record_attempt(n)
            if job.status == JobStatus.RETRYING:
                job.status = JobStatus.RUNNING

        def on_retry(n: int, error: StageError, delay: float) -> None:
            job.status = JobStatus.RETRYING
            job.record_error(error, attempts=n)
            self._event(ctx, "status", step=step, message=f"retrying {step} in {delay:.1f}s")

        result = ctx.runner.run(job.stage.value, step, fn, policy=policy, on_attempt=on_attempt, on_retry=on_retry)
        if result.ok and job.error is not None:
            job.error = None
        return result

    def _failed(self, ctx: _JobContext, result: StageResult) -> PipelineJob:
        job = ctx.job
        error = result.error or StageError(ErrorKind.INTERNAL, "stage failed without an error")
        job.record_error(error, attempts=result.attempts)
        job.status = JobStatus.FAILED
        ctx.store.save_checkpoint(job)
        hint = f" ({error.hint})" if error.hint else ""
        logger.error("[job] %s failed at %s: %s%s", job.id, job.stage.value, error, hint)
        self._status(ctx, f"failed: {error}{hint}")
        return job

    def _cancelled(self, ctx: _JobContext) -> PipelineJob:
        job = ctx.job
        job.status = JobStatus.CANCELLED
        job.touch()
        ctx.store.save_checkpoint(job)
        logger.warning("[job] %s cancelled at %s", job.id, job.stage.value)
        self._status(ctx, "cancelled")
        return job

    def _succeed(self, ctx: _JobContext) -> PipelineJob:
        job = ctx.job
        job.status = JobStatus.SUCCEEDED
        job.touch()
        ctx.store.save_checkpoint(job)
        self._event(ctx, "progress", stage="overall", progress=1.0)
        self._status(ctx, "done")
        return job

    def _overall(self, ctx: _JobContext) -> None:
        current = stage_index(ctx.job.stage)
        overall = sum(w for s, w in STAGE_WEIGHTS.items() if stage_index(s) < current)
        self._event(ctx, "progress", stage="overall", progress=min(1.0, overall))

    def _status(self, ctx: _JobContext, message: str) -> None:
        self._event(ctx, "status", message=message)

    def _event(self, ctx: _JobContext, kind: str, *, stage: Any = None, **fields: Any) -> None:
        if stage is None:
            stage = ctx.job.stage
        name = stage.value if isinstance(stage, JobStage) else str(stage)
        ctx.emit(PipelineEvent(kind=kind, stage=name, ts_ns=now_ns(), job_id=ctx.job.id, **fields))


def job_artifact_paths(config: PipelineConfig, job: PipelineJob) -> Dict[str, Path]:
    store = ArtifactStore(config.out_dir, job.id)
    return {kind.value: store.job_dir / location for kind, location in job.artifacts.items()}
