"""Bounded-retry website generation.

One attempt is model call -> JSON extraction -> normalization -> semantic
check. :func:`attempt_generation` is the pure half of an attempt and can be
exercised with canned model text; :func:`generate_website` wraps it in the
retry loop.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from siteforge import llm_client
from siteforge.errors import GenerationExhausted, InputError
from siteforge.llm_parsing import extract_json_object
from siteforge.llm_prompts import (
    WEBSITE_SYSTEM_PROMPT,
    build_website_prompt,
    color_context,
    tier_context,
)
from siteforge.models import TIERS, ColorScheme, GeneratedWebsite
from siteforge.normalizer import check_semantics, normalize_website

log = logging.getLogger(__name__)

try:
    MAX_ATTEMPTS = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
except Exception:
    MAX_ATTEMPTS = 3
try:
    RETRY_DELAY_MS = int(os.getenv("GENERATION_RETRY_DELAY_MS", "500"))
except Exception:
    RETRY_DELAY_MS = 500

# (system_prompt, user_prompt) -> raw model text
Invoker = Callable[[str, str], str]


def _default_invoke(system_prompt: str, user_prompt: str) -> str:
    return llm_client.chat_completion(system_prompt, user_prompt)


def attempt_generation(raw_text: str) -> GeneratedWebsite:
    """Turn one raw model response into a checked website or raise."""
    data = extract_json_object(raw_text)
    if not isinstance(data, dict):
        raise ValueError("Response is not valid JSON object")
    return check_semantics(normalize_website(data))


def generate_website(
    prompt: str,
    tier: str = "free",
    color_scheme: Optional[ColorScheme] = None,
    *,
    invoke: Optional[Invoker] = None,
    max_attempts: Optional[int] = None,
    retry_delay_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GeneratedWebsite:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InputError("Prompt is required")
    if tier not in TIERS:
        raise InputError(f"Invalid tier: {tier}")

    call = invoke or _default_invoke
    attempts = max(1, MAX_ATTEMPTS if max_attempts is None else max_attempts)
    delay = RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
    user_prompt = build_website_prompt(prompt.strip(), tier_context(tier), color_context(color_scheme))

    last_error = "Unknown error"
    for attempt in range(1, attempts + 1):
        try:
            raw = call(WEBSITE_SYSTEM_PROMPT, user_prompt)
            website = attempt_generation(raw)
            log.info(
                "generator: attempt %d/%d succeeded tier=%s sections=%d",
                attempt,
                attempts,
                tier,
                len(website.sections),
            )
            return website
        except Exception as exc:
            last_error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            log.warning("generator: attempt %d/%d failed: %s", attempt, attempts, last_error)
        if attempt < attempts and delay > 0:
            sleep(delay / 1000.0)

    raise GenerationExhausted(
        f"Generation failed after {attempts} attempts. {last_error}",
        last_error=last_error,
        attempts=attempts,
    )
