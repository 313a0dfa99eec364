from __future__ import annotations

import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .artifacts import ArtifactStore, list_jobs
from .config import PipelineConfig
from .errors import ErrorKind, StageError, hint_for
from .events import PipelineEvent
from .logging import get_console, setup_logging
from .models import JobStatus, PipelineJob
from .orchestrator import PipelineOrchestrator, job_artifact_paths
from .runner import CancelToken

app = typer.Typer(no_args_is_help=True, add_completion=False)
console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

STATUS_EXIT = {
    JobStatus.SUCCEEDED: EXIT_OK,
    JobStatus.FAILED: EXIT_FAILED,
    JobStatus.CANCELLED: EXIT_CANCELLED,
}


def _fail_usage(message: str) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=EXIT_USAGE)


def _build_config(
    *,
    out: Optional[Path],
    frames: Optional[int],
    interval: Optional[float],
    max_attempts: Optional[int],
    viewer: Optional[str],
    launch: bool,
    optimize: Optional[bool],
    recon_url: Optional[str],
) -> PipelineConfig:
    if frames is not None and interval is not None:
        raise StageError(ErrorKind.CONFIG, "--frames and --interval are mutually exclusive")
    sampling: Optional[Dict[str, Any]] = None
    if frames is not None:
        sampling = {"fixed_count": frames}
    elif interval is not None:
        sampling = {"fixed_interval_s": interval}

    cfg = PipelineConfig.from_env(
        out_dir=out,
        sampling=sampling,
        viewer_executable=viewer,
        launch_viewer=launch,
        optimize_prompt=optimize,
        recon_base_url=recon_url,
    )
    if max_attempts is not None:
        cfg = cfg.model_copy(update={"retry": cfg.retry.model_copy(update={"max_attempts": max_attempts})})
    return cfg


def _print_job(job: PipelineJob, cfg: PipelineConfig) -> None:
    table = Table(show_header=False, box=None)
    table.add_row("Job", job.id)
    table.add_row("Prompt", job.prompt)
    table.add_row("Stage", job.stage.value)
    table.add_row("Status", job.status.value)
    if job.attempts:
        table.add_row("Attempts", ", ".join(f"{k}={v}" for k, v in job.attempts.items()))
    for kind, path in job_artifact_paths(cfg, job).items():
        table.add_row(kind, str(path))
    if job.error:
        table.add_row("Error", f"{job.error.kind.value} at {job.error.stage.value}: {job.error.message}")
    handoff = job.metadata.get("handoff")
    if handoff:
        table.add_row("Viewer", f"{handoff.get('outcome')}: {handoff.get('command')}")
    console.print(table)


@app.command()
def run(
    prompt: Optional[List[str]] = typer.Argument(None, help="Text prompt describing the scene"),
    out: Optional[Path] = typer.Option(None, help="Root folder for job directories (default: $TEXT2SPLAT_OUT_DIR, else ./runs)"),
    resume: Optional[str] = typer.Option(None, help="Resume an existing job by id"),
    viewer_only: bool = typer.Option(False, help="Only hand an existing job's point cloud to the viewer (needs --resume)"),
    dry_run: bool = typer.Option(False, help="Print the stages that would run and exit"),
    frames: Optional[int] = typer.Option(None, min=1, help="Sample N evenly spaced frames"),
    interval: Optional[float] = typer.Option(None, min=0.01, help="Sample one frame every T seconds"),
    max_attempts: Optional[int] = typer.Option(None, min=1, help="Attempt ceiling per stage step"),
    viewer: Optional[str] = typer.Option(None, help="Viewer/trainer executable (e.g. brush_app)"),
    launch: bool = typer.Option(True, "--launch/--no-launch", help="Start the viewer when reconstruction finishes"),
    optimize: Optional[bool] = typer.Option(None, "--optimize/--no-optimize", help="Rewrite the prompt before generation"),
    recon_url: Optional[str] = typer.Option(None, help="Base URL of the reconstruction server"),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
):
    """Run (or resume) the text -> video -> frames -> point cloud pipeline."""

    setup_logging(log_level)
    text = " ".join(prompt or []).strip()

    if viewer_only and not resume:
        raise _fail_usage("--viewer-only needs --resume JOB_ID")
    if resume and text:
        raise _fail_usage("pass either a prompt or --resume, not both")
    if not resume and not text:
        raise _fail_usage("a prompt is required (or --resume JOB_ID)")

    try:
        cfg = _build_config(
            out=out,
            frames=frames,
            interval=interval,
            max_attempts=max_attempts,
            viewer=viewer,
            launch=launch,
            optimize=optimize,
            recon_url=recon_url,
        )
    except StageError as exc:
        raise _fail_usage(str(exc))

    cancel = CancelToken()
    tasks: Dict[str, TaskID] = {}
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=get_console(),
    )

    def on_event(evt: PipelineEvent) -> None:
        if evt.kind == "progress" and evt.progress is not None:
            if evt.stage not in tasks:
                tasks[evt.stage] = progress.add_task(evt.stage, total=1.0)
            progress.update(tasks[evt.stage], completed=evt.progress)
        elif evt.kind == "log" and evt.stage in tasks and evt.message:
            progress.update(tasks[evt.stage], description=f"{evt.stage} [dim]{evt.message}[/dim]")
        elif evt.kind == "outcome" and evt.delay_s is not None:
            progress.console.print(f"[yellow]{evt.stage}/{evt.step}: {evt.message} in {evt.delay_s:.1f}s[/yellow]")

    orch = PipelineOrchestrator(cfg, emit=on_event, cancel=cancel)

    try:
        if viewer_only:
            result = orch.view_only(resume)
            console.print(f"Viewer {result.outcome}: {result.command_line}")
            if result.reason:
                console.print(f"[dim]{result.reason}[/dim]")
            raise typer.Exit(code=EXIT_OK)

        if dry_run:
            job = orch.prepare_resume(orch.load_job(resume)) if resume else PipelineJob(prompt=text)
            console.print(f"Job: {job.id if resume else '(new)'}")
            console.print(f"Sampling: {cfg.sampling.describe()}")
            console.print(f"Reconstruction: {cfg.recon_base_url}{cfg.recon_upload_path}")
            console.print("Plan: " + (" -> ".join(s.value for s in orch.plan(job)) or "nothing to do"))
            raise typer.Exit(code=EXIT_OK)

        job = orch.prepare_resume(orch.load_job(resume)) if resume else orch.create_job(text)
        console.print(f"Job {job.id} -> {ArtifactStore(cfg.out_dir, job.id).job_dir}")

        def _interrupt(signum: int, frame: Any) -> None:
            if cancel.cancelled:
                raise KeyboardInterrupt
            get_console().print("[yellow]Cancelling… (Ctrl-C again to abort)[/yellow]")
            cancel.cancel()

        previous = signal.signal(signal.SIGINT, _interrupt)
        try:
            with progress:
                job = orch.run(job)
        finally:
            signal.signal(signal.SIGINT, previous)
    except StageError as exc:
        code = EXIT_USAGE if exc.kind == ErrorKind.CONFIG else EXIT_FAILED
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=code)
    finally:
        orch.close()

    _print_job(job, cfg)
    if job.status == JobStatus.SUCCEEDED:
        console.print("\n[bold green]Done.[/bold green]")
    elif job.status == JobStatus.CANCELLED:
        console.print(f"\n[yellow]Cancelled.[/yellow] Resume with: text2splat run --resume {job.id}")
    else:
        hint = hint_for(job.error.kind) if job.error else ""
        console.print(f"\n[bold red]Failed.[/bold red] {hint}")
        console.print(f"Resume with: text2splat run --resume {job.id}")
    raise typer.Exit(code=STATUS_EXIT.get(job.status, EXIT_FAILED))


@app.command()
def status(
    job_id: Optional[str] = typer.Argument(None, help="Job id; omit to list all jobs"),
    out: Optional[Path] = typer.Option(None, help="Root folder for job directories (default: $TEXT2SPLAT_OUT_DIR, else ./runs)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw checkpoint as JSON"),
):
    """Show a job's checkpoint, or list jobs under the output folder."""

    try:
        cfg = PipelineConfig.from_env(out_dir=out)
    except StageError as exc:
        raise _fail_usage(str(exc))
    root = cfg.out_dir
    if job_id is None:
        ids = list_jobs(root)
        if not ids:
            console.print(f"No jobs under {root}")
            raise typer.Exit(code=EXIT_OK)
        table = Table("Job", "Stage", "Status", "Prompt")
        for jid in ids:
            try:
                job = ArtifactStore(root, jid).load_checkpoint()
            except StageError as exc:
                table.add_row(jid, "?", "unreadable", str(exc))
                continue
            table.add_row(job.id, job.stage.value, job.status.value, job.prompt)
        console.print(table)
        raise typer.Exit(code=EXIT_OK)

    try:
        job = ArtifactStore(root, job_id).load_checkpoint()
    except StageError as exc:
        raise _fail_usage(str(exc))
    if as_json:
        console.print_json(job.model_dump_json())
        raise typer.Exit(code=EXIT_OK)
    _print_job(job, cfg)
