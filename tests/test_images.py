from unittest.mock import MagicMock, patch

import pytest

from siteforge import images
from siteforge.errors import ImageGenerationError, InputError
from siteforge.images import ImagePipeline
from siteforge.models import Section


def _sections():
    return [
        Section(name="Hero", heading="Hi", content="", image_prompt="a loaf of bread"),
        Section(name="About", heading="Us", content="", image_prompt="a bakery counter"),
        Section(name="Menu", heading="Menu", content=""),
        Section(name="Contact", heading="Visit", content="", image_prompt="a storefront"),
    ]


def _resp(status=200, body=None):
    r = MagicMock()
    r.status_code = status
    r.text = ""
    r.json.return_value = body or {}
    return r


def test_middle_failure_keeps_going_and_reaches_full_progress():
    def fake_generate(prompt):
        if "counter" in prompt:
            raise ImageGenerationError("Prediction failed")
        return f"https://img/{prompt.split()[-1]}.png"

    pipeline = ImagePipeline(generate=fake_generate)
    updates = list(pipeline.iter_run(_sections()))
    assert [(u.progress.current, u.progress.total) for u in updates] == [(1, 3), (2, 3), (3, 3)]
    assert updates[1].error == "Prediction failed"
    assert updates[1].image is None

    final, progress = pipeline.run(_sections())
    assert (progress.current, progress.total) == (3, 3)
    assert final[0].generated_image == "https://img/bread.png"
    assert final[1].generated_image is None
    assert final[2].generated_image is None
    assert final[3].generated_image == "https://img/storefront.png"


def test_sections_without_prompts_are_skipped():
    calls = []
    ImagePipeline(generate=lambda p: calls.append(p) or "u").run(_sections())
    assert calls == ["a loaf of bread", "a bakery counter", "a storefront"]


def test_no_prompts_means_empty_progress():
    final, progress = ImagePipeline(generate=lambda p: "u").run([Section(name="A", heading="A", content="")])
    assert (progress.current, progress.total) == (0, 0)
    assert final[0].generated_image is None


def test_input_sections_are_not_mutated():
    original = _sections()
    ImagePipeline(generate=lambda p: "u").run(original)
    assert all(s.generated_image is None for s in original)


def test_regenerate_with_custom_prompt_replaces_prompt():
    section = _sections()[0]
    out = ImagePipeline(generate=lambda p: "https://img/new.png").regenerate(section, "  a croissant  ")
    assert out.generated_image == "https://img/new.png"
    assert out.image_prompt == "a croissant"
    assert section.image_prompt == "a loaf of bread"


def test_regenerate_failure_propagates_and_keeps_section():
    section = _sections()[0].model_copy(update={"generated_image": "https://img/old.png"})

    def boom(prompt):
        raise ImageGenerationError("Prediction timed out")

    with pytest.raises(ImageGenerationError):
        ImagePipeline(generate=boom).regenerate(section, "new prompt")
    assert section.generated_image == "https://img/old.png"


def test_regenerate_without_any_prompt():
    with pytest.raises(InputError):
        ImagePipeline(generate=lambda p: "u").regenerate(Section(name="A", heading="A", content=""))


def test_generate_image_requires_token(monkeypatch):
    monkeypatch.setattr(images, "REPLICATE_API_TOKEN", "")
    with pytest.raises(ImageGenerationError) as exc:
        images.generate_image("a cake")
    assert exc.value.message == "Image provider not configured"
    with pytest.raises(InputError):
        images.generate_image("  ")


def test_generate_image_creates_then_polls(monkeypatch):
    monkeypatch.setattr(images, "REPLICATE_API_TOKEN", "r8-token")
    monkeypatch.setattr(images, "POLL_INTERVAL_SECS", 0)
    created = _resp(201, {"urls": {"get": "https://api.replicate.com/v1/predictions/abc"}})
    polls = [
        _resp(200, {"status": "starting"}),
        _resp(200, {"status": "succeeded", "output": ["https://cdn/out.png"]}),
    ]
    with patch("requests.post", return_value=created) as mock_post, patch("requests.get", side_effect=polls):
        assert images.generate_image("a cake") == "https://cdn/out.png"
    body = mock_post.call_args[1]["json"]
    assert body["version"] == images.REPLICATE_MODEL_VERSION
    assert body["input"]["prompt"] == "a cake" + images.PROMPT_SUFFIX
    assert body["input"]["width"] == 1024
    assert mock_post.call_args[1]["headers"]["Authorization"] == "Token r8-token"


def test_create_failure_raises(monkeypatch):
    monkeypatch.setattr(images, "REPLICATE_API_TOKEN", "r8-token")
    with patch("requests.post", return_value=_resp(422)):
        with pytest.raises(ImageGenerationError) as exc:
            images.generate_image("a cake")
    assert exc.value.message == "Failed to start image generation"


@pytest.mark.parametrize("state", ["failed", "canceled"])
def test_poll_terminal_failure(state):
    with patch("requests.get", return_value=_resp(200, {"status": state, "error": "nsfw"})):
        with pytest.raises(ImageGenerationError) as exc:
            images.poll_prediction("https://x", max_attempts=3, sleep=lambda s: None)
    assert exc.value.message == f"Prediction {state}"


def test_poll_times_out_after_cap():
    sleeps = []
    with patch("requests.get", return_value=_resp(200, {"status": "processing"})) as mock_get:
        with pytest.raises(ImageGenerationError) as exc:
            images.poll_prediction("https://x", max_attempts=4, interval=0.25, sleep=sleeps.append)
    assert exc.value.message == "Prediction timed out"
    assert mock_get.call_count == 4
    assert sleeps == [0.25] * 4
