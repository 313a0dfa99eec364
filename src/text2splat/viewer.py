from __future__ import annotations

import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Literal, Optional, Sequence

from .logging import get_logger

logger = get_logger("viewer")

HandoffOutcome = Literal["launched", "deferred"]


@dataclass(frozen=True)
class HandoffResult:
    outcome: HandoffOutcome
    command: List[str] = field(default_factory=list)
    pid: Optional[int] = None
    reason: Optional[str] = None

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def to_dict(self) -> dict:
        d = {"outcome": self.outcome, "command": self.command_line}
        if self.pid is not None:
            d["pid"] = self.pid
        if self.reason:
            d["reason"] = self.reason
        return d


class ViewerLauncher:
    """
    Hands the final point cloud to an external viewer/trainer (e.g. brush_app).

    Never fails: when no viewer is configured, or it cannot be started, the
    exact command to run by hand is returned instead.
    """

    def __init__(
        self,
        *,
        executable: Optional[str] = None,
        args: Sequence[str] = ("--with-viewer",),
        hint: str = "brush_app",
        launch: bool = True,
    ):
        self.executable = executable
        self.args = list(args)
        self.hint = hint
        self.launch = launch

    def command_for(self, artifact: Path, executable: Optional[str] = None) -> List[str]:
        return [executable or self.executable or self.hint, str(artifact), *self.args]

    def _resolve(self) -> Optional[str]:
        if not self.executable:
            return None
        if Path(self.executable).is_file():
            return str(Path(self.executable))
        return shutil.which(self.executable)

    def handoff(self, artifact: Path) -> HandoffResult:
        artifact = Path(artifact).resolve()
        resolved = self._resolve()
        if not self.launch or resolved is None:
            reason = "launch disabled" if not self.launch else (
                "no viewer configured" if not self.executable else f"viewer not found: {self.executable}"
            )
            cmd = self.command_for(artifact)
            logger.info("[viewer] %s; run manually: %s", reason, shlex.join(cmd))
            return HandoffResult(outcome="deferred", command=cmd, reason=reason)

        cmd = self.command_for(artifact, resolved)
        try:
            # Detached: the viewer outlives this process and is never killed on cancel.
            proc = subprocess.Popen(cmd, start_new_session=True)
        except OSError as exc:
            logger.warning("[viewer] failed to launch %s: %s", resolved, exc)
            return HandoffResult(outcome="deferred", command=cmd, reason=f"launch failed: {exc}")
        logger.info("[viewer] launched pid=%d: %s", proc.pid, shlex.join(cmd))
        return HandoffResult(outcome="launched", command=cmd, pid=proc.pid)
