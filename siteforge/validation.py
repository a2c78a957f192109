"""Website checks in four independent categories, each issue paired with a fix.

A fix is a plain dict ``{"type": ..., **params}`` so it can travel through
the HTTP surface unchanged and be handed back to :func:`apply_fixes`.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from siteforge.errors import InputError
from siteforge.models import GeneratedWebsite, Section, ValidationCategory, ValidationResult
from siteforge.normalizer import section_anchor, slugify

log = logging.getLogger(__name__)

SCROLL_ACTIONS = ("scroll",)
TARGETED_ACTIONS = ("scroll", "link")
USER_DATA_HINTS = ("user", "profile", "account", "me")


def _anchors(sections: Sequence[Section]) -> List[str]:
    return [section_anchor(s.name) for s in sections]


def _best_anchor(label: str, sections: Sequence[Section], exclude: Optional[int] = None) -> str:
    """Anchor of the section whose name matches ``label``; else the last other section."""
    wanted = slugify(label)
    for idx, s in enumerate(sections):
        if idx != exclude and wanted and slugify(s.name) == wanted:
            return section_anchor(s.name)
    for idx in range(len(sections) - 1, -1, -1):
        if idx != exclude:
            return section_anchor(sections[idx].name)
    return section_anchor(sections[0].name) if sections else "#"


def check_navigation(website: GeneratedWebsite) -> ValidationCategory:
    cat = ValidationCategory()
    anchors = set(_anchors(website.sections))
    for idx, item in enumerate(website.navigation):
        if item.type != "scroll" and not item.target.startswith("#"):
            continue
        if item.target in anchors:
            continue
        cat.issues.append(f'Navigation item "{item.label}" points to missing section {item.target}')
        cat.fixes.append(
            {"type": "retarget_navigation", "index": idx, "target": _best_anchor(item.label, website.sections)}
        )
    cat.passed = not cat.issues
    return cat


def check_buttons(website: GeneratedWebsite) -> ValidationCategory:
    cat = ValidationCategory()
    anchors = set(_anchors(website.sections))
    for idx, s in enumerate(website.sections):
        if not s.cta:
            continue
        target = _best_anchor("contact", website.sections, exclude=idx)
        if not s.cta_action:
            cat.issues.append(f'Button "{s.cta}" in {s.name} has no action')
            cat.fixes.append({"type": "set_cta_action", "section": idx, "ctaAction": "scroll", "ctaTarget": target})
        elif s.cta_action in TARGETED_ACTIONS and not s.cta_target:
            cat.issues.append(f'Button "{s.cta}" in {s.name} has no target')
            cat.fixes.append(
                {"type": "set_cta_action", "section": idx, "ctaAction": s.cta_action, "ctaTarget": target}
            )
        elif s.cta_action in SCROLL_ACTIONS and s.cta_target not in anchors:
            cat.issues.append(f'Button "{s.cta}" in {s.name} scrolls to missing section {s.cta_target}')
            cat.fixes.append({"type": "set_cta_action", "section": idx, "ctaAction": "scroll", "ctaTarget": target})
    cat.passed = not cat.issues
    return cat


def check_security(website: GeneratedWebsite) -> ValidationCategory:
    cat = ValidationCategory()
    backend = website.backend
    if backend is None:
        return cat
    owned = []
    for table in backend.database.tables:
        if table.has_rls is False:
            cat.issues.append(f"Table {table.name} has row level security disabled")
            cat.fixes.append({"type": "enable_rls", "table": table.name})
        if table.rls_policy == "user_owned":
            owned.append(table.name)
            if not any(c.name == "user_id" for c in table.columns):
                cat.issues.append(f"Table {table.name} is user_owned but has no user_id column")
                cat.fixes.append({"type": "add_user_id_column", "table": table.name})
    for endpoint in backend.api_endpoints:
        if endpoint.requires_auth:
            continue
        haystack = f"{endpoint.path} {endpoint.name}".lower()
        tokens = set(slugify(haystack).split("-"))
        if any(name.lower() in haystack for name in owned) or tokens.intersection(USER_DATA_HINTS):
            cat.issues.append(f"Endpoint {endpoint.name} touches user data without authentication")
            cat.fixes.append({"type": "require_auth", "endpoint": endpoint.name})
    cat.passed = not cat.issues
    return cat


def check_forms(website: GeneratedWebsite) -> ValidationCategory:
    cat = ValidationCategory()
    for idx, s in enumerate(website.sections):
        if s.has_form and not s.form_type:
            cat.issues.append(f"Section {s.name} has a form without a form type")
            cat.fixes.append({"type": "set_form_type", "section": idx, "formType": "contact"})
    backend = website.backend
    if backend is None:
        cat.passed = not cat.issues
        return cat
    tables = [t.name for t in backend.database.tables]
    for form in backend.forms:
        has_email = any((f.type or "").lower() == "email" for f in form.fields)
        if has_email and not (form.has_validation and form.validation_rules):
            cat.issues.append(f"Form {form.id} collects email without validation rules")
            cat.fixes.append({"type": "enable_form_validation", "form": form.id})
        if form.target_table not in tables:
            cat.issues.append(f"Form {form.id} targets undeclared table {form.target_table}")
            match = next((t for t in tables if form.id and form.id in t), None)
            if match:
                cat.fixes.append({"type": "set_target_table", "form": form.id, "targetTable": match})
            else:
                cat.fixes.append({"type": "add_table", "table": form.target_table})
    cat.passed = not cat.issues
    return cat


def validate_website(website: GeneratedWebsite) -> ValidationResult:
    return ValidationResult(
        navigation=check_navigation(website),
        buttons=check_buttons(website),
        security=check_security(website),
        forms=check_forms(website),
    )


# ---------------------------------------------------------------------------
# fixes operate on the wire dict, then the result is re-validated
# ---------------------------------------------------------------------------


def _at(items: List[Dict[str, Any]], index: Any, what: str) -> Dict[str, Any]:
    if not isinstance(index, int) or not 0 <= index < len(items):
        raise InputError(f"Fix refers to missing {what} {index}")
    return items[index]


def _named(items: List[Dict[str, Any]], key: str, value: Any, what: str) -> Dict[str, Any]:
    for item in items:
        if item.get(key) == value:
            return item
    raise InputError(f"Fix refers to missing {what} {value}")


def _backend(data: Dict[str, Any]) -> Dict[str, Any]:
    backend = data.get("backend")
    if not isinstance(backend, dict):
        raise InputError("Fix requires a backend specification")
    return backend


def _fix_retarget_navigation(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    item = _at(data.get("navigation", []), fix.get("index"), "navigation item")
    item["target"] = fix["target"]
    item["type"] = "scroll"


def _fix_set_cta_action(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    section = _at(data["sections"], fix.get("section"), "section")
    section["ctaAction"] = fix.get("ctaAction") or "scroll"
    if fix.get("ctaTarget"):
        section["ctaTarget"] = fix["ctaTarget"]


def _fix_set_form_type(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    section = _at(data["sections"], fix.get("section"), "section")
    section["formType"] = fix.get("formType") or "contact"


def _fix_enable_rls(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    table = _named(_backend(data)["database"]["tables"], "name", fix.get("table"), "table")
    table["hasRLS"] = True


def _fix_add_user_id_column(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    table = _named(_backend(data)["database"]["tables"], "name", fix.get("table"), "table")
    columns = table.setdefault("columns", [])
    if not any(c.get("name") == "user_id" for c in columns):
        columns.append({"name": "user_id", "type": "uuid", "nullable": False, "description": "Owner of the row"})


def _fix_require_auth(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    endpoint = _named(_backend(data).get("apiEndpoints", []), "name", fix.get("endpoint"), "endpoint")
    endpoint["requiresAuth"] = True


def _fix_enable_form_validation(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    form = _named(_backend(data).get("forms", []), "id", fix.get("form"), "form")
    form["hasValidation"] = True
    rules = list(form.get("validationRules") or [])
    for field in form.get("fields", []):
        if field.get("required") and "required" not in rules:
            rules.append("required")
        if (field.get("type") or "").lower() == "email" and "email" not in rules:
            rules.append("email")
    form["validationRules"] = rules or ["required"]


def _fix_set_target_table(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    form = _named(_backend(data).get("forms", []), "id", fix.get("form"), "form")
    form["targetTable"] = fix["targetTable"]


def _fix_add_table(data: Dict[str, Any], fix: Dict[str, Any]) -> None:
    tables = _backend(data)["database"]["tables"]
    name = fix.get("table")
    if not isinstance(name, str) or not name:
        raise InputError("Fix requires a table name")
    if any(t.get("name") == name for t in tables):
        return
    tables.append(
        {
            "name": name,
            "description": "Form submissions",
            "rlsPolicy": "public_read",
            "columns": [
                {"name": "id", "type": "uuid", "nullable": False},
                {"name": "payload", "type": "jsonb", "nullable": True},
                {"name": "created_at", "type": "timestamp", "nullable": False},
            ],
        }
    )


FIXERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], None]] = {
    "retarget_navigation": _fix_retarget_navigation,
    "set_cta_action": _fix_set_cta_action,
    "set_form_type": _fix_set_form_type,
    "enable_rls": _fix_enable_rls,
    "add_user_id_column": _fix_add_user_id_column,
    "require_auth": _fix_require_auth,
    "enable_form_validation": _fix_enable_form_validation,
    "set_target_table": _fix_set_target_table,
    "add_table": _fix_add_table,
}


def apply_fixes(website: GeneratedWebsite, fixes: Sequence[Dict[str, Any]]) -> GeneratedWebsite:
    """Return a new website with ``fixes`` applied in order; the input is left as is."""
    data = website.to_wire()
    data.setdefault("navigation", [])
    for fix in fixes:
        kind = fix.get("type") if isinstance(fix, dict) else None
        fixer = FIXERS.get(kind) if isinstance(kind, str) else None
        if fixer is None:
            raise InputError(f"Unknown fix type: {kind}")
        fixer(data, fix)
    log.info("validation: applied %d fixes", len(fixes))
    return GeneratedWebsite.model_validate(data)
