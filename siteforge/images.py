"""Image synthesis: Replicate prediction client and the sequential section pipeline."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import requests

from siteforge.errors import ImageGenerationError, InputError
from siteforge.models import ImageProgress, Section

log = logging.getLogger(__name__)

REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "").strip()
REPLICATE_MODEL_VERSION = os.getenv(
    "REPLICATE_MODEL_VERSION",
    "db21e45d3f7023abc2a46ee38a23973f6dce16bb082a930b0c49861f96d1e5bf",
).strip()
REPLICATE_ENDPOINT = "https://api.replicate.com/v1/predictions"
PROMPT_SUFFIX = ". High quality, professional, modern website imagery, clean aesthetics."

try:
    POLL_INTERVAL_SECS = float(os.getenv("IMAGE_POLL_INTERVAL_SECS", "1.0"))
except Exception:
    POLL_INTERVAL_SECS = 1.0
try:
    POLL_MAX_ATTEMPTS = int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", "60"))
except Exception:
    POLL_MAX_ATTEMPTS = 60
try:
    REQUEST_TIMEOUT_SECS = int(os.getenv("IMAGE_REQUEST_TIMEOUT_SECS", "30"))
except Exception:
    REQUEST_TIMEOUT_SECS = 30


def _headers() -> Dict[str, str]:
    return {"Authorization": f"Token {REPLICATE_API_TOKEN}", "Content-Type": "application/json"}


def is_configured() -> bool:
    return bool(REPLICATE_API_TOKEN)


def create_prediction(prompt: str) -> Dict[str, Any]:
    body = {
        "version": REPLICATE_MODEL_VERSION,
        "input": {
            "prompt": f"{prompt}{PROMPT_SUFFIX}",
            "width": 1024,
            "height": 1024,
            "num_outputs": 1,
            "scheduler": "K_EULER",
            "num_inference_steps": 25,
            "guidance_scale": 7.5,
        },
    }
    try:
        resp = requests.post(REPLICATE_ENDPOINT, headers=_headers(), json=body, timeout=REQUEST_TIMEOUT_SECS)
    except requests.RequestException as exc:
        log.warning("replicate: create request error: %r", exc)
        raise ImageGenerationError("Failed to start image generation") from exc
    if resp.status_code not in (200, 201):
        log.warning("replicate: create HTTP %s: %s", resp.status_code, (resp.text or "")[:400])
        raise ImageGenerationError("Failed to start image generation")
    return resp.json()


def poll_prediction(
    get_url: str,
    *,
    max_attempts: Optional[int] = None,
    interval: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Poll a prediction until it succeeds; raise once it fails or the attempt cap is hit."""
    attempts = POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
    wait = POLL_INTERVAL_SECS if interval is None else interval
    for _ in range(attempts):
        sleep(wait)
        try:
            resp = requests.get(get_url, headers=_headers(), timeout=REQUEST_TIMEOUT_SECS)
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            log.warning("replicate: poll error: %r", exc)
            continue
        state = data.get("status")
        if state == "succeeded":
            return data
        if state in ("failed", "canceled"):
            log.warning("replicate: prediction %s: %s", state, data.get("error"))
            raise ImageGenerationError(f"Prediction {state}")
    raise ImageGenerationError("Prediction timed out")


def generate_image(prompt: str) -> str:
    """Synthesize one image and return its URL."""
    if not isinstance(prompt, str) or not prompt.strip():
        raise InputError("Prompt is required")
    if not is_configured():
        raise ImageGenerationError("Image provider not configured")
    prediction = create_prediction(prompt.strip())
    get_url = (prediction.get("urls") or {}).get("get")
    if not get_url:
        raise ImageGenerationError("Failed to start image generation")
    result = poll_prediction(get_url)
    output = result.get("output")
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0]
    if isinstance(output, str) and output:
        return output
    raise ImageGenerationError("No image in prediction output")


@dataclass(frozen=True)
class ImageUpdate:
    """One completed attempt within a batch; ``sections`` is the snapshot after it."""

    index: int
    image: Optional[str]
    error: Optional[str]
    progress: ImageProgress
    sections: Tuple[Section, ...]


class ImagePipeline:
    def __init__(self, generate: Callable[[str], str] = generate_image) -> None:
        self._generate = generate

    def iter_run(self, sections: Sequence[Section]) -> Iterator[ImageUpdate]:
        """Illustrate sections in order, one request at a time, yielding after each attempt.

        The total is fixed from the input up front. A failed section keeps
        whatever it had and the batch moves on.
        """
        current: List[Section] = list(sections)
        targets = [i for i, s in enumerate(current) if s.image_prompt]
        total = len(targets)
        for done, idx in enumerate(targets, start=1):
            section = current[idx]
            image: Optional[str] = None
            error: Optional[str] = None
            try:
                image = self._generate(section.image_prompt or "")
                current[idx] = section.model_copy(update={"generated_image": image})
            except Exception as exc:
                error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
                log.warning("images: section %d (%s) failed: %s", idx, section.name, error)
            yield ImageUpdate(
                index=idx,
                image=image,
                error=error,
                progress=ImageProgress(current=done, total=total),
                sections=tuple(current),
            )

    def run(self, sections: Sequence[Section]) -> Tuple[List[Section], ImageProgress]:
        result = list(sections)
        progress = ImageProgress(current=0, total=sum(1 for s in sections if s.image_prompt))
        for update in self.iter_run(sections):
            result = list(update.sections)
            progress = update.progress
        return result, progress

    def regenerate(self, section: Section, custom_prompt: Optional[str] = None) -> Section:
        """Redraw one section's image; a custom prompt is kept only when the image succeeds."""
        prompt = (custom_prompt or "").strip() or (section.image_prompt or "").strip()
        if not prompt:
            raise InputError("Section has no image prompt")
        image = self._generate(prompt)
        return section.model_copy(update={"generated_image": image, "image_prompt": prompt})
