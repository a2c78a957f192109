import pytest

from siteforge.llm_parsing import extract_json_object, object_slice, strip_code_fences


def test_strips_json_fence():
    text = 'Here you go:\n```json\n{"a": 1}\n```\nEnjoy'
    assert strip_code_fences(text) == '{"a": 1}'


def test_unterminated_fence_is_trimmed():
    assert strip_code_fences('```json\n{"a": 1}') == '{"a": 1}'


def test_object_slice_uses_first_and_last_brace():
    assert object_slice('noise {"a": {"b": 2}} trailing') == '{"a": {"b": 2}}'
    assert object_slice("no braces here") is None
    assert object_slice("} backwards {") is None


def test_extracts_object_wrapped_in_prose():
    assert extract_json_object('Sure! {"sections": []} Hope that helps.') == {"sections": []}


def test_repairs_trailing_commas_and_smart_quotes():
    assert extract_json_object('{“a”: [1, 2,],}') == {"a": [1, 2]}


@pytest.mark.parametrize(
    "text, message",
    [
        ("", "Empty response from AI"),
        ("   ", "Empty response from AI"),
        ("just words", "Response is not valid JSON object"),
    ],
)
def test_failure_messages(text, message):
    with pytest.raises(ValueError) as exc:
        extract_json_object(text)
    assert str(exc.value) == message


def test_unparsable_object_reports_parse_failure():
    with pytest.raises(ValueError) as exc:
        extract_json_object("{not json at all}")
    assert str(exc.value).startswith("Failed to parse AI response as JSON")
