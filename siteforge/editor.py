from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from siteforge import llm_client
from siteforge.errors import EditInProgressError, InputError, ModelError
from siteforge.llm_parsing import extract_json_object
from siteforge.llm_prompts import EDIT_SYSTEM_PROMPT, build_edit_prompt
from siteforge.models import Section
from siteforge.normalizer import SECTION_SOURCES, _non_blank_text, first_match

log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "heading", "content")
OPTIONAL_FIELDS = ("cta", "cta_action", "cta_target", "image_prompt")

# wire names used in the patch returned to callers
_WIRE = {
    "name": "name",
    "heading": "heading",
    "content": "content",
    "cta": "cta",
    "cta_action": "ctaAction",
    "cta_target": "ctaTarget",
    "image_prompt": "imagePrompt",
}


def _default_invoke(system_prompt: str, user_prompt: str) -> str:
    return llm_client.chat_completion(system_prompt, user_prompt, temperature=0.7, max_tokens=1000)


def parse_section_patch(raw_text: str) -> Dict[str, Any]:
    """Decode an edit response into a wire-keyed patch; ``generatedImage`` never appears."""
    data = extract_json_object(raw_text)
    if not isinstance(data, dict):
        raise ValueError("Response is not valid JSON object")
    patch: Dict[str, Any] = {}
    for field in REQUIRED_FIELDS:
        if field == "content":
            value = data.get("content")
            value = value if isinstance(value, str) and value.strip() else None
        else:
            value = first_match(data, SECTION_SOURCES[field], _non_blank_text)
        if value is None:
            raise ValueError("Section missing required fields")
        patch[_WIRE[field]] = value
    for field in OPTIONAL_FIELDS:
        value = first_match(data, SECTION_SOURCES[field], _non_blank_text)
        if value is not None:
            patch[_WIRE[field]] = value
    return patch


def request_section_edit(
    section: Section,
    instructions: str,
    *,
    invoke: Optional[Callable[[str, str], str]] = None,
) -> Dict[str, Any]:
    """Ask the model to revise one section; return the patch or raise."""
    if not isinstance(instructions, str) or not instructions.strip():
        raise InputError("Section and edit instructions are required")
    call = invoke or _default_invoke
    raw = call(EDIT_SYSTEM_PROMPT, build_edit_prompt(section, instructions.strip()))
    try:
        patch = parse_section_patch(raw)
    except ValueError as exc:
        log.warning("editor: unusable edit response for section=%s: %s", section.name, exc)
        raise ModelError(str(exc)) from exc
    log.info("editor: section=%s fields=%s", section.name, sorted(patch))
    return patch


def merge_section_patch(section: Section, patch: Dict[str, Any]) -> Section:
    """Apply a patch field by field. The rendered image is always the section's own."""
    merged = section.to_wire()
    merged.update(patch)
    if section.generated_image is None:
        merged.pop("generatedImage", None)
    else:
        merged["generatedImage"] = section.generated_image
    return Section.model_validate(merged)


class EditLock:
    """One outstanding edit per content object, held by token."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._token: Optional[str] = None
        self._index: Optional[int] = None

    def acquire(self, index: int) -> str:
        with self._mutex:
            if self._token is not None:
                raise EditInProgressError(f"Section {self._index} is already being edited")
            self._token = uuid.uuid4().hex
            self._index = index
            return self._token

    def holds(self, token: str) -> bool:
        with self._mutex:
            return token is not None and token == self._token

    def release(self, token: str) -> bool:
        with self._mutex:
            if token != self._token:
                return False
            self._token = None
            self._index = None
            return True

    def reset(self) -> None:
        """Drop whatever token is held; its holder can no longer commit."""
        with self._mutex:
            self._token = None
            self._index = None
