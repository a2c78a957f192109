import pytest

from siteforge.errors import InputError
from siteforge.models import GeneratedWebsite
from siteforge.validation import apply_fixes, check_buttons, check_navigation, check_security, validate_website


def _website():
    return GeneratedWebsite.model_validate(
        {
            "websiteType": "saas",
            "sections": [
                {"name": "Hero", "heading": "Notes that stick", "content": "", "cta": "Start"},
                {"name": "Contact", "heading": "Talk to us", "content": "", "hasForm": True},
            ],
            "navigation": [
                {"label": "Hero", "target": "#hero", "type": "scroll"},
                {"label": "Pricing", "target": "#pricing", "type": "scroll"},
                {"label": "Docs", "target": "https://docs.example.com", "type": "link"},
            ],
            "backend": {
                "database": {
                    "tables": [
                        {"name": "notes", "rlsPolicy": "user_owned", "columns": [{"name": "id", "type": "uuid"}]},
                        {"name": "logs", "hasRLS": False, "columns": [{"name": "line"}]},
                    ]
                },
                "forms": [
                    {
                        "id": "contact",
                        "targetTable": "messages",
                        "fields": [{"name": "email", "type": "email"}],
                    }
                ],
                "apiEndpoints": [
                    {"name": "get-profile", "method": "GET", "path": "/api/profile"},
                    {"name": "health", "method": "GET", "path": "/api/health"},
                ],
            },
        }
    )


def _fix_types(category):
    return [f["type"] for f in category.fixes]


def test_each_category_reports_its_issues():
    result = validate_website(_website())
    assert not result.passed
    assert _fix_types(result.navigation) == ["retarget_navigation"]
    assert result.navigation.fixes[0] == {"type": "retarget_navigation", "index": 1, "target": "#contact"}
    assert _fix_types(result.buttons) == ["set_cta_action"]
    assert result.buttons.fixes[0]["ctaTarget"] == "#contact"
    assert sorted(_fix_types(result.security)) == ["add_user_id_column", "enable_rls", "require_auth"]
    assert sorted(_fix_types(result.forms)) == ["add_table", "enable_form_validation", "set_form_type"]
    assert result.total_issues == 8


def test_applying_all_fixes_passes_revalidation():
    site = _website()
    result = validate_website(site)
    fixes = result.navigation.fixes + result.buttons.fixes + result.security.fixes + result.forms.fixes
    fixed = apply_fixes(site, fixes)
    after = validate_website(fixed)
    assert after.passed, after.to_wire()
    assert fixed.navigation[1].target == "#contact"
    assert fixed.sections[0].cta_action == "scroll"
    assert fixed.sections[1].form_type == "contact"
    assert [t.name for t in fixed.backend.database.tables] == ["notes", "logs", "messages"]
    assert fixed.backend.api_endpoints[0].requires_auth is True
    assert fixed.backend.api_endpoints[1].requires_auth is False
    # the input is untouched
    assert site.navigation[1].target == "#pricing"


def test_external_links_are_not_checked():
    cat = check_navigation(_website())
    assert all("Docs" not in issue for issue in cat.issues)


def test_matching_form_table_is_retargeted_not_added():
    site = _website().to_wire()
    site["backend"]["database"]["tables"].append({"name": "contact_messages", "columns": [{"name": "id"}]})
    result = validate_website(GeneratedWebsite.model_validate(site))
    target_fixes = [f for f in result.forms.fixes if f["type"] == "set_target_table"]
    assert target_fixes == [{"type": "set_target_table", "form": "contact", "targetTable": "contact_messages"}]


def test_scroll_button_to_missing_section():
    site = _website().to_wire()
    site["sections"][0].update({"ctaAction": "scroll", "ctaTarget": "#nowhere"})
    cat = check_buttons(GeneratedWebsite.model_validate(site))
    assert len(cat.issues) == 1
    assert "#nowhere" in cat.issues[0]


def test_no_backend_means_security_passes():
    site = _website().model_copy(update={"backend": None})
    assert check_security(site).passed


def test_unknown_fix_type_rejected():
    with pytest.raises(InputError):
        apply_fixes(_website(), [{"type": "drop_everything"}])


def test_fix_with_missing_target_rejected():
    with pytest.raises(InputError):
        apply_fixes(_website(), [{"type": "enable_rls", "table": "ghosts"}])
    with pytest.raises(InputError):
        apply_fixes(_website(), [{"type": "set_form_type", "section": 9}])
