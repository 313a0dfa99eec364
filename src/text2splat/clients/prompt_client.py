from __future__ import annotations

import os
from typing import Any, Optional

import httpx

from ..config import API_KEY_ENV, DEFAULT_VIDEO_BASE_URL
from ..errors import ErrorKind, StageError
from ..logging import get_logger
from ._http import raise_for_status, transport_error

META_PROMPT_TEMPLATE = """
You are a master prompt engineer specializing in text-to-video generation.
Your task is to take a user's base prompt and enhance it to be more descriptive, dynamic, and cinematic for the Veo video generation model.
Add details about camera view movement, lighting, tracking, and composition while preserving the core subject.
The camera should orbit the subject so that consecutive frames see it from different angles.

Your output MUST be only the rewritten prompt text and nothing else.

**User's Base Prompt:**
"{user_prompt}"
"""


class PromptOptimizer:
    """Rewrites a short prompt into a camera-aware video prompt with a Gemini text model."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_VIDEO_BASE_URL,
        model: str = "gemini-2.5-flash",
        temperature: float = 1.4,
        top_p: float = 0.9,
        timeout_s: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.log = get_logger("prompt")
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.api_key = api_key or os.getenv(API_KEY_ENV)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"},
            timeout=timeout_s,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def optimize(self, prompt: str) -> str:
        if not self.api_key:
            raise StageError(ErrorKind.AUTH, f"{API_KEY_ENV} environment variable not set")
        payload = {
            "contents": [
                {"role": "user", "parts": [{"text": META_PROMPT_TEMPLATE.format(user_prompt=prompt)}]},
            ],
            "generationConfig": {
                "responseMimeType": "text/plain",
                "temperature": self.temperature,
                "topP": self.top_p,
            },
        }
        self.log.info("[prompt] asking %s to optimize prompt", self.model)
        try:
            r = self._client.post(f"/models/{self.model}:streamGenerateContent", json=payload)
        except httpx.HTTPError as exc:
            raise transport_error(exc, "prompt optimize") from exc
        raise_for_status(r, "prompt optimize")

        try:
            text = collect_text(r.json()).strip()
        except ValueError as exc:
            raise StageError(ErrorKind.BAD_REQUEST, f"prompt optimize returned invalid JSON: {exc}") from exc
        if not text:
            raise StageError(ErrorKind.BAD_REQUEST, "model did not return an optimized prompt")
        self.log.info("[prompt] optimized prompt: %r", text)
        return text

    def optimize_or_keep(self, prompt: str) -> str:
        """Like optimize(), but any failure falls back to the original prompt."""
        try:
            return self.optimize(prompt)
        except StageError as exc:
            self.log.warning("[prompt] could not optimize prompt, using original: %s", exc)
            return prompt


def collect_text(data: Any) -> str:
    """Concatenate the first candidate's first text part across streamed chunks."""
    chunks = data if isinstance(data, list) else [data]
    out = []
    for chunk in chunks:
        if not isinstance(chunk, dict):
            continue
        candidates = chunk.get("candidates") or []
        if not candidates:
            continue
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        if parts and isinstance(parts[0], dict) and parts[0].get("text"):
            out.append(str(parts[0]["text"]))
    return "".join(out)
