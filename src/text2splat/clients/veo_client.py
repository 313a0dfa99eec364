from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import httpx

from ..config import API_KEY_ENV, DEFAULT_VIDEO_BASE_URL
from ..errors import ErrorKind, StageError
from ..logging import get_logger
from ._http import raise_for_status, transport_error

PollState = Literal["pending", "ready", "failed"]


@dataclass(frozen=True)
class VideoPoll:
    state: PollState
    video_uri: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == "ready"


@dataclass(frozen=True)
class GenerationOptions:
    aspect_ratio: str = "16:9"
    person_generation: str = "allow_all"
    sample_count: int = 1
    duration_seconds: int = 5
    extra: Optional[Dict[str, Any]] = None

    def to_parameters(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "personGeneration": self.person_generation,
            "aspectRatio": self.aspect_ratio,
            "sampleCount": self.sample_count,
            "durationSeconds": self.duration_seconds,
        }
        params.update(self.extra or {})
        return params


class VideoGenerationClient:
    """
    Veo long-running generation through the Gemini API.

    submit -> operation name, poll(operation) -> pending/ready/failed,
    download(uri) -> local file. Each call is a single request so the caller
    can wrap it in its own retry/timeout/cancellation policy.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_VIDEO_BASE_URL,
        model: str = "veo-2.0-generate-001",
        timeout_s: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.log = get_logger("veo")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key or os.getenv(API_KEY_ENV)

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"},
            timeout=timeout_s,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "VideoGenerationClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_key(self) -> None:
        if not self.api_key:
            raise StageError(ErrorKind.AUTH, f"{API_KEY_ENV} environment variable not set")

    def submit(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        self._require_key()
        options = options or GenerationOptions()
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": options.to_parameters(),
        }
        self.log.info("[veo] submitting generation job model=%s", self.model)
        try:
            r = self._client.post(f"/models/{self.model}:predictLongRunning", json=payload)
        except httpx.HTTPError as exc:
            raise transport_error(exc, "veo submit") from exc
        raise_for_status(r, "veo submit")
        data = r.json()
        name = data.get("name")
        if not name:
            raise StageError(ErrorKind.TRANSIENT_NETWORK, f"veo submit response missing operation name: {data}")
        self.log.info("[veo] job submitted operation=%s", name)
        return str(name)

    def poll(self, handle: str) -> VideoPoll:
        self._require_key()
        try:
            r = self._client.get(f"/{handle.lstrip('/')}")
        except httpx.HTTPError as exc:
            raise transport_error(exc, "veo poll") from exc
        raise_for_status(r, "veo poll")
        return parse_operation(r.json())

    def download(self, video_uri: str, dest: Path) -> Path:
        """
        Stream the video to ``dest``.

        ``dest`` should be a staging path; a short read raises a retryable
        error and the partial file is removed.
        """
        self._require_key()
        dest.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            with self._client.stream("GET", video_uri) as r:
                if r.status_code >= 400:
                    r.read()
                raise_for_status(r, "veo download")
                expected = r.headers.get("content-length")
                with dest.open("wb") as f:
                    for chunk in r.iter_bytes():
                        f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as exc:
            dest.unlink(missing_ok=True)
            raise transport_error(exc, "veo download") from exc
        except StageError:
            dest.unlink(missing_ok=True)
            raise

        if expected is not None and int(expected) != written:
            dest.unlink(missing_ok=True)
            raise StageError(
                ErrorKind.TRANSIENT_NETWORK,
                f"veo download incomplete: got {written} of {expected} bytes",
            )
        if written == 0:
            dest.unlink(missing_ok=True)
            raise StageError(ErrorKind.TRANSIENT_NETWORK, "veo download returned an empty body")
        self.log.info("[veo] downloaded %d bytes -> %s", written, dest)
        return dest


def parse_operation(data: Dict[str, Any]) -> VideoPoll:
    """Map a long-running operation document to pending/ready/failed."""
    if not data.get("done"):
        return VideoPoll(state="pending")

    err = data.get("error")
    if err:
        code = err.get("code") if isinstance(err, dict) else None
        msg = err.get("message") if isinstance(err, dict) else str(err)
        return VideoPoll(state="failed", reason=f"(code {code}) {msg}")

    response = data.get("response") or {}
    gen = response.get("generateVideoResponse") or {}
    samples = gen.get("generatedSamples") or []
    if not samples:
        filtered = gen.get("raiMediaFilteredReasons")
        reason = "; ".join(filtered) if filtered else "response did not contain any generated video samples"
        return VideoPoll(state="failed", reason=reason)

    uri = ((samples[0] or {}).get("video") or {}).get("uri")
    if not uri:
        return VideoPoll(state="failed", reason="generated sample has no video uri")
    return VideoPoll(state="ready", video_uri=str(uri))
