from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeExtractor, FakeOptimizer, FakeReconClient, FakeVideoClient

from text2splat.artifacts import ArtifactStore
from text2splat.errors import ErrorKind, StageError
from text2splat.models import ArtifactKind, JobStage, JobStatus
from text2splat.runner import CancelToken


def test_happy_path_runs_every_stage(make_orch, cfg):
    video, extractor, recon = FakeVideoClient(pending_polls=2), FakeExtractor(), FakeReconClient()
    events = []
    orch = make_orch(video=video, extractor=extractor, recon=recon, emit=events.append)

    job = orch.run_prompt("a red ceramic teapot on a wooden table")

    assert job.status == JobStatus.SUCCEEDED
    assert job.stage == JobStage.DONE
    assert set(job.artifacts) == {ArtifactKind.VIDEO, ArtifactKind.FRAME_SET, ArtifactKind.POINT_CLOUD}
    assert video.submits == 1 and video.polls == 3 and video.downloads == 1

    # Six frames (default sampling), uploaded in timestamp order.
    names = [p.name for p in recon.uploads[0]]
    assert names == [f"frame_{i:04d}.jpg" for i in range(6)]

    store = ArtifactStore(cfg.out_dir, job.id)
    assert (store.job_dir / "recon" / "output.ply").is_file()
    assert store.load_checkpoint().status == JobStatus.SUCCEEDED

    handoff = job.metadata["handoff"]
    assert handoff["outcome"] == "deferred"
    assert "brush_app" in handoff["command"] and "output.ply" in handoff["command"]

    lines = store.events_path.read_text(encoding="utf-8").splitlines()
    assert lines and all(json.loads(line)["job_id"] == job.id for line in lines)
    assert any(e.kind == "artifact" for e in events)


def test_prompt_is_optimized_but_job_prompt_kept(make_orch, cfg):
    video = FakeVideoClient()
    optimizer = FakeOptimizer("slow orbit around a red teapot, soft light")
    orch = make_orch(config=cfg.model_copy(update={"optimize_prompt": True}), video=video, optimizer=optimizer)

    job = orch.run_prompt("red teapot")

    assert video.prompts == ["slow orbit around a red teapot, soft light"]
    assert job.prompt == "red teapot"
    assert job.metadata["generation_prompt"] == "slow orbit around a red teapot, soft light"


def test_backend_never_ready_fails_at_reconstruction(make_orch, cfg):
    recon = FakeReconClient(ready=[False])
    orch = make_orch(recon=recon)

    job = orch.run_prompt("a chair")

    assert job.status == JobStatus.FAILED
    assert job.stage == JobStage.RECONSTRUCTING
    assert job.error is not None
    assert job.error.kind == ErrorKind.SERVER_UNAVAILABLE
    assert job.error.stage == JobStage.RECONSTRUCTING
    assert job.error.attempts == 3
    assert recon.probes == 3
    assert recon.uploads == []
    assert set(job.artifacts) == {ArtifactKind.VIDEO, ArtifactKind.FRAME_SET}

    saved = ArtifactStore(cfg.out_dir, job.id).load_checkpoint()
    assert saved.status == JobStatus.FAILED
    assert saved.stage == JobStage.RECONSTRUCTING


def test_resume_after_failure_skips_finished_stages(make_orch):
    video, extractor = FakeVideoClient(), FakeExtractor()
    job = make_orch(video=video, extractor=extractor, recon=FakeReconClient(ready=[False])).run_prompt("a chair")
    assert job.status == JobStatus.FAILED

    recon = FakeReconClient()
    resumed = make_orch(video=video, extractor=extractor, recon=recon).resume(job.id)

    assert resumed.status == JobStatus.SUCCEEDED
    assert resumed.error is None
    assert video.submits == 1
    assert extractor.calls == 1
    assert len(recon.uploads) == 1


def test_resume_of_finished_job_is_a_noop(make_orch):
    video, extractor, recon = FakeVideoClient(), FakeExtractor(), FakeReconClient()
    job = make_orch(video=video, extractor=extractor, recon=recon).run_prompt("a lamp")

    again = make_orch(video=video, extractor=extractor, recon=recon).resume(job.id)

    assert again.status == JobStatus.SUCCEEDED
    assert again.stage == JobStage.DONE
    assert (video.submits, extractor.calls, len(recon.uploads)) == (1, 1, 1)


def test_corrupted_point_cloud_is_rebuilt(make_orch, cfg):
    video, extractor, recon = FakeVideoClient(), FakeExtractor(), FakeReconClient()
    job = make_orch(video=video, extractor=extractor, recon=recon).run_prompt("a lamp")

    ply = ArtifactStore(cfg.out_dir, job.id).job_dir / "recon" / "output.ply"
    ply.write_bytes(b"not a point cloud")

    again = make_orch(video=video, extractor=extractor, recon=recon).resume(job.id)

    assert again.status == JobStatus.SUCCEEDED
    assert ply.read_bytes().startswith(b"ply")
    assert video.submits == 1
    assert extractor.calls == 1
    assert len(recon.uploads) == 2


def test_missing_video_restarts_from_generation(make_orch, cfg):
    video, extractor, recon = FakeVideoClient(), FakeExtractor(), FakeReconClient()
    job = make_orch(video=video, extractor=extractor, recon=recon).run_prompt("a lamp")
    (ArtifactStore(cfg.out_dir, job.id).job_dir / "video" / "video.mp4").unlink()

    again = make_orch(video=video, extractor=extractor, recon=recon).resume(job.id)

    assert again.status == JobStatus.SUCCEEDED
    assert video.downloads == 2
    assert extractor.calls == 2
    assert len(recon.uploads) == 2


def test_cancel_during_polling_then_resume_reattaches(make_orch, cfg):
    cancel = CancelToken()
    cfg = cfg.model_copy(update={"poll_interval_s": 30.0, "max_polls": 50})
    video = FakeVideoClient(pending_polls=3, on_poll=lambda n: cancel.cancel() if n == 1 else None)

    job = make_orch(config=cfg, video=video, cancel=cancel).run_prompt("a boat")

    assert job.status == JobStatus.CANCELLED
    assert job.stage == JobStage.GENERATING_VIDEO
    assert video.polls == 1
    saved = ArtifactStore(cfg.out_dir, job.id).load_checkpoint()
    assert saved.status == JobStatus.CANCELLED
    assert saved.metadata["video_handle"] == "operations/op-1"

    video.on_poll = None
    resumed = make_orch(config=cfg.model_copy(update={"poll_interval_s": 0.0}), video=video).resume(job.id)

    assert resumed.status == JobStatus.SUCCEEDED
    assert video.submits == 1


def test_expired_operation_is_resubmitted_on_resume(make_orch, cfg):
    video = FakeVideoClient(poll_errors=[StageError(ErrorKind.BAD_REQUEST, "404 operation not found")])

    job = make_orch(video=video).run_prompt("a boat")

    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.BAD_REQUEST
    assert "video_handle" not in ArtifactStore(cfg.out_dir, job.id).load_checkpoint().metadata

    resumed = make_orch(video=video).resume(job.id)

    assert resumed.status == JobStatus.SUCCEEDED
    assert video.submits == 2
    assert resumed.metadata["video_handle"] == "operations/op-2"


def test_transient_poll_failure_keeps_the_operation(make_orch, cfg):
    video = FakeVideoClient(poll_errors=[StageError(ErrorKind.TRANSIENT_NETWORK, "connection reset")] * 3)

    job = make_orch(video=video).run_prompt("a boat")

    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.TRANSIENT_NETWORK
    assert ArtifactStore(cfg.out_dir, job.id).load_checkpoint().metadata["video_handle"] == "operations/op-1"

    resumed = make_orch(video=video).resume(job.id)

    assert resumed.status == JobStatus.SUCCEEDED
    assert video.submits == 1


def test_cancel_during_prompt_optimisation_submits_nothing(make_orch, cfg):
    cancel = CancelToken()

    class _BlockingOptimizer(FakeOptimizer):
        def optimize_or_keep(self, prompt):
            self.calls += 1
            cancel.wait(5.0)
            return self.rewritten

    video = FakeVideoClient()
    events = []
    threading.Timer(0.1, cancel.cancel).start()

    started = time.monotonic()
    job = make_orch(
        config=cfg.model_copy(update={"optimize_prompt": True}),
        video=video,
        optimizer=_BlockingOptimizer("orbiting boat"),
        cancel=cancel,
        emit=events.append,
    ).run_prompt("a boat")

    assert job.status == JobStatus.CANCELLED
    assert job.stage == JobStage.GENERATING_VIDEO
    assert time.monotonic() - started < 3
    assert video.submits == 0
    assert "generation_prompt" not in job.metadata
    assert any(e.kind == "attempt" and e.step == "optimize_prompt" for e in events)


def test_timed_out_extraction_does_not_replace_recorded_frames(make_orch, cfg):
    class _SlowOnceExtractor(FakeExtractor):
        started = 0

        def extract(self, video, policy, out_dir, *, on_progress=None):
            self.started += 1
            if self.started == 1:
                time.sleep(1.0)
                (out_dir / "stale.txt").write_text("first attempt", encoding="utf-8")
            return super().extract(video, policy, out_dir, on_progress=on_progress)

    extractor = _SlowOnceExtractor()
    cfg = cfg.model_copy(update={"retry": cfg.retry.model_copy(update={"attempt_timeout_s": 0.3})})

    job = make_orch(config=cfg, extractor=extractor).run_prompt("a boat")

    assert job.status == JobStatus.SUCCEEDED
    frames = ArtifactStore(cfg.out_dir, job.id).job_dir / "frames"
    inode = frames.stat().st_ino

    for t in threading.enumerate():
        if t.name == "extracting_frames-extract":
            t.join(3.0)

    assert extractor.calls == 2
    assert frames.stat().st_ino == inode
    assert not (frames / "stale.txt").exists()
    assert not [p for p in frames.parent.iterdir() if p.name.endswith(".part")]


def test_generation_failure_is_not_retried(make_orch):
    video = FakeVideoClient(fail_reason="prompt was filtered")

    job = make_orch(video=video).run_prompt("something")

    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.GENERATION_FAILED
    assert "filtered" in job.error.message
    assert "video_handle" not in job.metadata
    assert video.downloads == 0


def test_video_never_ready_times_out(make_orch):
    video = FakeVideoClient(pending_polls=100)

    job = make_orch(video=video).run_prompt("something")

    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.TIMEOUT
    assert video.polls == 5


def test_transient_submit_error_is_retried(make_orch):
    video = FakeVideoClient(submit_errors=[StageError(ErrorKind.TRANSIENT_NETWORK, "connection reset")])
    events = []

    job = make_orch(video=video, emit=events.append).run_prompt("a bench")

    assert job.status == JobStatus.SUCCEEDED
    assert video.submits == 2
    submit_attempts = [e.attempt for e in events if e.kind == "attempt" and e.step == "submit"]
    assert submit_attempts == [1, 2]


def test_auth_error_fails_immediately(make_orch):
    video = FakeVideoClient(submit_errors=[StageError(ErrorKind.AUTH, "API key not valid")])

    job = make_orch(video=video).run_prompt("a bench")

    assert job.status == JobStatus.FAILED
    assert job.stage == JobStage.GENERATING_VIDEO
    assert job.error.kind == ErrorKind.AUTH
    assert job.error.attempts == 1
    assert video.submits == 1


def test_extraction_error_surfaces(make_orch):
    extractor = FakeExtractor(error=StageError(ErrorKind.EXTRACTION, "video too short"))

    job = make_orch(extractor=extractor).run_prompt("a bench")

    assert job.status == JobStatus.FAILED
    assert job.stage == JobStage.EXTRACTING_FRAMES
    assert job.error.kind == ErrorKind.EXTRACTION
    assert extractor.calls == 1
    assert ArtifactKind.FRAME_SET not in job.artifacts


def test_non_ply_reconstruction_response_fails(make_orch):
    recon = FakeReconClient(content=b"<html>oops</html>")

    job = make_orch(recon=recon).run_prompt("a bench")

    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.TRANSIENT_NETWORK
    assert len(recon.uploads) == 3
    assert ArtifactKind.POINT_CLOUD not in job.artifacts


def test_empty_prompt_is_a_config_error(make_orch):
    with pytest.raises(StageError) as err:
        make_orch().create_job("   ")
    assert err.value.kind == ErrorKind.CONFIG


def test_concurrent_jobs_do_not_share_state(make_orch, cfg):
    def _one(prompt):
        return make_orch(video=FakeVideoClient(pending_polls=1), recon=FakeReconClient()).run_prompt(prompt)

    with ThreadPoolExecutor(max_workers=2) as ex:
        a, b = list(ex.map(_one, ["a red chair", "a blue chair"]))

    assert a.id != b.id
    assert a.status == b.status == JobStatus.SUCCEEDED
    assert ArtifactStore(cfg.out_dir, a.id).load_checkpoint().prompt == "a red chair"
    assert ArtifactStore(cfg.out_dir, b.id).load_checkpoint().prompt == "a blue chair"


def test_view_only_requires_point_cloud(make_orch):
    orch = make_orch(recon=FakeReconClient(ready=[False]))
    job = orch.run_prompt("a vase")

    with pytest.raises(StageError) as err:
        orch.view_only(job.id)
    assert err.value.kind == ErrorKind.CONFIG


def test_plan_after_failure_starts_at_failed_stage(make_orch):
    orch = make_orch(recon=FakeReconClient(ready=[False]))
    job = orch.run_prompt("a vase")

    plan = orch.plan(orch.prepare_resume(orch.load_job(job.id)))

    assert plan == [JobStage.RECONSTRUCTING, JobStage.VIEWING]
