"""Coerce loosely shaped model output into :class:`GeneratedWebsite`.

Every tolerated alias lives in one of the decision tables below: for each
target field, the candidate source keys are tried in order and the first
usable value wins. Shape mismatches never raise; only a payload that is not
a JSON object at all raises :class:`SchemaError`.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from siteforge.errors import SchemaError, SemanticValidationError
from siteforge.models import (
    EXPLANATION_KEYS,
    WEBSITE_TYPES,
    BackendSpec,
    GeneratedWebsite,
    NavigationItem,
    Section,
)

log = logging.getLogger(__name__)

# target field -> ordered candidate keys in the raw section object
SECTION_SOURCES: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "title"),
    "heading": ("heading", "title"),
    "content": ("content",),
    "cta": ("cta", "callToAction"),
    "cta_action": ("ctaAction",),
    "cta_target": ("ctaTarget",),
    "image_prompt": ("imagePrompt",),
    "generated_image": ("generatedImage",),
    "has_form": ("hasForm", "form"),
    "form_type": ("formType",),
}

NAVIGATION_SOURCES: Dict[str, Tuple[str, ...]] = {
    "label": ("label", "title"),
    "target": ("target", "link", "href"),
    "type": ("type",),
}

NAVIGATION_DEFAULTS: Dict[str, str] = {"label": "Link", "target": "#", "type": "scroll"}

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", (text or "").lower()).strip("-")


def section_anchor(name: str) -> str:
    return f"#{slugify(name)}"


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _non_blank_text(value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None or not text.strip():
        return None
    return text.strip()


def _as_flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "yes", "1"}:
            return True
        if v in {"false", "no", "0", ""}:
            return False
    # a nested form object (or any other truthy payload) means "has a form"
    return bool(value)


def first_match(
    raw: Mapping[str, Any],
    candidates: Sequence[str],
    coerce: Callable[[Any], Any] = _as_text,
) -> Any:
    """Return the first candidate key whose value survives ``coerce``."""
    for key in candidates:
        if key not in raw:
            continue
        value = coerce(raw[key])
        if value is not None:
            return value
    return None


def normalize_section(raw: Mapping[str, Any], index: int) -> Section:
    name = first_match(raw, SECTION_SOURCES["name"], _non_blank_text) or f"Section {index + 1}"
    heading = first_match(raw, SECTION_SOURCES["heading"], _non_blank_text) or name
    content = raw.get("content")
    return Section(
        name=name,
        heading=heading,
        content=content if isinstance(content, str) else "",
        cta=first_match(raw, SECTION_SOURCES["cta"], _non_blank_text),
        cta_action=first_match(raw, SECTION_SOURCES["cta_action"], _non_blank_text),
        cta_target=first_match(raw, SECTION_SOURCES["cta_target"], _non_blank_text),
        image_prompt=first_match(raw, SECTION_SOURCES["image_prompt"], _non_blank_text),
        generated_image=first_match(raw, SECTION_SOURCES["generated_image"], _non_blank_text),
        has_form=first_match(raw, SECTION_SOURCES["has_form"], _as_flag),
        form_type=first_match(raw, SECTION_SOURCES["form_type"], _non_blank_text),
    )


def normalize_navigation_item(raw: Mapping[str, Any]) -> NavigationItem:
    values = {
        field: first_match(raw, keys, _non_blank_text) or NAVIGATION_DEFAULTS[field]
        for field, keys in NAVIGATION_SOURCES.items()
    }
    return NavigationItem(**values)


def derive_navigation(sections: Sequence[Section]) -> List[NavigationItem]:
    return [NavigationItem(label=s.name, target=section_anchor(s.name), type="scroll") for s in sections]


def _normalize_explanation(raw: Mapping[str, Any], website_type: str, audience: str) -> Dict[str, Any]:
    value = raw.get("internalExplanation")
    if isinstance(value, dict):
        return dict(value)
    explanation = {key: "" for key in EXPLANATION_KEYS}
    explanation["websiteType"] = website_type
    explanation["audience"] = audience
    if isinstance(value, str):
        # older payloads carried a single rationale string
        explanation["sectionRationale"] = value
    return explanation


def _normalize_backend(value: Any) -> Optional[BackendSpec]:
    if not isinstance(value, dict):
        return None
    database = value.get("database")
    if not isinstance(database, dict) or not isinstance(database.get("tables"), list):
        return None
    try:
        return BackendSpec.model_validate(value)
    except ValidationError as exc:
        log.warning("normalizer: dropping malformed backend spec: %s", exc.errors()[:3])
        return None


def _normalize_prompts(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    seen: List[str] = []
    for item in value:
        text = _non_blank_text(item)
        if text and text not in seen:
            seen.append(text)
    return seen


def normalize_website(raw: Any) -> GeneratedWebsite:
    """Coerce a decoded JSON value into a :class:`GeneratedWebsite`.

    Raises :class:`SchemaError` only when ``raw`` is not an object.
    """
    if not isinstance(raw, dict):
        raise SchemaError(f"Expected a JSON object, got {type(raw).__name__}")

    raw_sections = raw.get("sections")
    sections: List[Section] = []
    if isinstance(raw_sections, list):
        for idx, item in enumerate(raw_sections):
            if not isinstance(item, dict):
                log.debug("normalizer: skipping non-object section at index %d", idx)
                continue
            sections.append(normalize_section(item, idx))

    raw_nav = raw.get("navigation")
    if isinstance(raw_nav, list):
        navigation = [normalize_navigation_item(n) for n in raw_nav if isinstance(n, dict)]
    else:
        navigation = derive_navigation(sections)

    website_type = str(raw.get("websiteType") or "").strip().lower()
    if website_type not in WEBSITE_TYPES:
        website_type = "landing"
    audience = _as_text(raw.get("targetAudience")) or ""

    return GeneratedWebsite(
        website_type=website_type,
        target_audience=audience,
        sections=sections,
        navigation=navigation,
        suggested_prompts=_normalize_prompts(raw.get("suggestedPrompts")),
        backend=_normalize_backend(raw.get("backend")),
        internal_explanation=_normalize_explanation(raw, website_type, audience),
    )


def check_semantics(website: GeneratedWebsite) -> GeneratedWebsite:
    """Reject normalized output that cannot be shown as a website."""
    if not website.sections:
        raise SemanticValidationError("No sections generated")
    for section in website.sections:
        if not section.name.strip() or not section.heading.strip():
            raise SemanticValidationError("Section missing required fields")
    return website
