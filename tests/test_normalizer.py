import pytest

from siteforge.errors import SchemaError, SemanticValidationError
from siteforge.models import GeneratedWebsite
from siteforge.normalizer import (
    SECTION_SOURCES,
    check_semantics,
    derive_navigation,
    first_match,
    normalize_section,
    normalize_website,
    section_anchor,
)


def _raw_site():
    return {
        "websiteType": "saas",
        "targetAudience": "Small teams",
        "sections": [
            {"name": "Hero", "heading": "Ship faster", "content": "Plan less.", "cta": "Start", "imagePrompt": "A desk"},
            {"title": "Features", "content": "Everything you need."},
            {"content": 42},
        ],
        "suggestedPrompts": ["Add pricing", "Add pricing", "", 7],
        "internalExplanation": {"websiteType": "saas", "audience": "teams"},
    }


def test_name_and_heading_fallback_chain():
    site = normalize_website(_raw_site())
    hero, features, third = site.sections
    assert (hero.name, hero.heading) == ("Hero", "Ship faster")
    # title feeds both name and heading
    assert (features.name, features.heading) == ("Features", "Features")
    # nothing usable: synthesized positional label, heading falls back to it
    assert (third.name, third.heading) == ("Section 3", "Section 3")
    assert third.content == ""


def test_every_section_has_non_empty_name_and_heading():
    raw = {"sections": [{}, {"name": "  "}, {"heading": ""}, {"title": None}, {"name": "X", "heading": "   "}]}
    site = normalize_website(raw)
    assert len(site.sections) == 5
    for s in site.sections:
        assert s.name.strip()
        assert s.heading.strip()


def test_optional_fields_first_match_wins():
    s = normalize_section({"name": "CTA", "heading": "Go", "callToAction": "Buy", "form": {"fields": []}}, 0)
    assert s.cta == "Buy"
    assert s.has_form is True
    s2 = normalize_section({"name": "CTA", "heading": "Go", "cta": "Join", "callToAction": "Buy", "hasForm": "false"}, 0)
    assert s2.cta == "Join"
    assert s2.has_form is False


def test_first_match_skips_unusable_candidates():
    raw = {"heading": "   ", "title": "Fallback"}
    assert first_match(raw, SECTION_SOURCES["heading"], lambda v: v.strip() or None if isinstance(v, str) else None) == "Fallback"


def test_navigation_derived_when_absent():
    site = normalize_website(_raw_site())
    assert len(site.navigation) == len(site.sections)
    assert site.navigation[0].label == "Hero"
    assert site.navigation[0].target == "#hero"
    assert all(n.type == "scroll" for n in site.navigation)


def test_navigation_items_normalized_with_aliases():
    raw = {
        "sections": [{"name": "Hero", "heading": "H"}],
        "navigation": [{"title": "Home", "href": "#hero"}, {}, "junk"],
    }
    site = normalize_website(raw)
    assert [(n.label, n.target, n.type) for n in site.navigation] == [
        ("Home", "#hero", "scroll"),
        ("Link", "#", "scroll"),
    ]


def test_unknown_website_type_defaults_to_landing():
    site = normalize_website({"websiteType": "spaceship", "sections": [{"name": "Hero", "heading": "Hi"}]})
    assert site.website_type == "landing"


def test_suggested_prompts_deduped_strings_only():
    site = normalize_website(_raw_site())
    assert site.suggested_prompts == ["Add pricing", "7"]


def test_explanation_string_is_wrapped_not_discarded():
    raw = {"websiteType": "blog", "sections": [{"name": "Hero", "heading": "Hi"}], "internalExplanation": "Because."}
    site = normalize_website(raw)
    exp = site.internal_explanation
    assert exp["sectionRationale"] == "Because."
    assert exp["websiteType"] == "blog"
    assert set(exp) >= {"audience", "copyStrategy", "conversionGoal", "tierImpact"}


def test_explanation_synthesized_when_missing():
    site = normalize_website({"sections": [{"name": "Hero", "heading": "Hi"}], "targetAudience": "Bakers"})
    assert site.internal_explanation["audience"] == "Bakers"
    assert site.internal_explanation["websiteType"] == "landing"


def test_malformed_backend_is_dropped_entirely():
    base = {"sections": [{"name": "Hero", "heading": "Hi"}]}
    assert normalize_website(dict(base, backend={"features": ["x"]})).backend is None
    assert normalize_website(dict(base, backend={"database": {"tables": "nope"}})).backend is None
    assert normalize_website(dict(base, backend={"database": {"tables": [{"columns": []}]}})).backend is None


def test_well_formed_backend_is_kept():
    backend = {
        "features": ["contact_form"],
        "database": {"tables": [{"name": "contacts", "rlsPolicy": "public_read", "columns": [{"name": "id", "type": "uuid"}]}]},
        "forms": [{"id": "contact", "targetTable": "contacts", "fields": [{"name": "email", "type": "email"}]}],
    }
    site = normalize_website({"sections": [{"name": "Hero", "heading": "Hi"}], "backend": backend})
    assert site.backend is not None
    assert site.backend.database.tables[0].rls_policy == "public_read"
    assert site.backend.forms[0].target_table == "contacts"


@pytest.mark.parametrize("raw", [None, [], "text", 3, True])
def test_non_object_raises_schema_error(raw):
    with pytest.raises(SchemaError):
        normalize_website(raw)


def test_non_list_sections_yield_empty_sections_not_error():
    site = normalize_website({"sections": {"name": "Hero"}})
    assert site.sections == []
    with pytest.raises(SemanticValidationError) as exc:
        check_semantics(site)
    assert exc.value.message == "No sections generated"


def test_normalization_is_idempotent():
    once = normalize_website(_raw_site())
    twice = normalize_website(once.to_wire())
    assert twice == once
    assert normalize_website(twice.to_wire()).to_wire() == once.to_wire()


def test_check_semantics_accepts_valid_site():
    site = normalize_website(_raw_site())
    assert isinstance(check_semantics(site), GeneratedWebsite)


def test_anchor_and_derived_navigation_agree():
    site = normalize_website({"sections": [{"name": "How It Works", "heading": "Steps"}]})
    assert section_anchor("How It Works") == "#how-it-works"
    assert derive_navigation(site.sections)[0].target == "#how-it-works"
