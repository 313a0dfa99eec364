from __future__ import annotations

from contextlib import ExitStack
from pathlib import Path
from typing import Any, List, Optional, Sequence

import httpx

from ..errors import ErrorKind, StageError
from ..logging import get_logger
from ._http import raise_for_status, transport_error


class ReconstructionClient:
    """
    Multi-view reconstruction server reached over HTTP.

    ``GET {health_path}`` reports liveness; ``POST {upload_path}`` takes the
    frames as one multipart request (repeated ``images`` field, in order) and
    answers with a binary .ply point cloud or a structured error body.
    """

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:8888",
        upload_path: str = "/reconstruction",
        health_path: str = "/health",
        field_name: str = "images",
        min_frames: int = 2,
        timeout_s: float = 600.0,
        probe_timeout_s: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.log = get_logger("recon")
        self.base_url = base_url.rstrip("/")
        self.upload_path = upload_path
        self.health_path = health_path
        self.field_name = field_name
        self.min_frames = min_frames
        self.probe_timeout_s = probe_timeout_s

        self._client = httpx.Client(base_url=self.base_url, timeout=timeout_s, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ReconstructionClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def check_ready(self) -> bool:
        """Lightweight liveness probe; never raises for an unreachable server."""
        try:
            r = self._client.get(self.health_path, timeout=self.probe_timeout_s)
        except httpx.HTTPError as exc:
            self.log.info("[recon] %s unreachable: %s", self.base_url, exc)
            return False
        ready = r.status_code < 400
        if not ready:
            self.log.info("[recon] %s not ready (%d)", self.base_url, r.status_code)
        return ready

    def reconstruct(self, frame_paths: Sequence[Path], dest: Path) -> Path:
        """Upload ``frame_paths`` in order and write the returned point cloud to ``dest``."""
        frames: List[Path] = [Path(p) for p in frame_paths]
        if len(frames) < self.min_frames:
            raise StageError(
                ErrorKind.BAD_REQUEST,
                f"reconstruction needs at least {self.min_frames} frames, got {len(frames)}",
            )
        missing = [str(p) for p in frames if not p.is_file()]
        if missing:
            raise StageError(ErrorKind.BAD_REQUEST, f"frames missing on disk: {', '.join(missing)}")

        self.log.info("[recon] uploading %d images to %s%s", len(frames), self.base_url, self.upload_path)
        with ExitStack() as stack:
            files = [
                (self.field_name, (p.name, stack.enter_context(p.open("rb")), _mime_for(p)))
                for p in frames
            ]
            try:
                r = self._client.post(self.upload_path, files=files)
            except httpx.HTTPError as exc:
                raise transport_error(
                    exc, "reconstruction upload", connect_kind=ErrorKind.SERVER_UNAVAILABLE
                ) from exc

        raise_for_status(r, "reconstruction", unavailable_kind=ErrorKind.SERVER_UNAVAILABLE)
        data = r.content
        if not data:
            raise StageError(ErrorKind.TRANSIENT_NETWORK, "reconstruction server returned an empty body")

        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        self.log.info("[recon] point cloud saved (%d bytes)", len(data))
        return dest


def _mime_for(path: Path) -> str:
    return "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
