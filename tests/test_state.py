import json

import pytest

from siteforge.errors import EditInProgressError, GenerationExhausted, InputError, SiteForgeError, StaleResultError
from siteforge.images import ImagePipeline
from siteforge.models import GeneratedWebsite, ImageProgress
from siteforge.state import GenerationSession, GenerationStateStore


def _site(names=("Hero", "About", "Contact"), with_prompts=True):
    return GeneratedWebsite.model_validate(
        {
            "sections": [
                dict(
                    {"name": n, "heading": n, "content": f"{n} copy"},
                    **({"imagePrompt": f"{n.lower()} photo"} if with_prompts else {}),
                )
                for n in names
            ]
        }
    )


def _loaded_store(site=None):
    store = GenerationStateStore()
    epoch = store.begin_generation()
    store.commit_generation(epoch, site or _site())
    return store, epoch


def _names(store):
    return [s.name for s in store.state.sections]


def test_stale_generation_is_dropped():
    store = GenerationStateStore()
    first = store.begin_generation()
    second = store.begin_generation()
    assert store.commit_generation(first, _site(("Old",))) is False
    assert store.state.content is None
    assert store.state.is_generating is True
    assert store.commit_generation(second, _site(("New",))) is True
    assert _names(store) == ["New"]
    assert store.state.is_generating is False


def test_stale_failure_does_not_clobber_newer_run():
    store = GenerationStateStore()
    first = store.begin_generation()
    store.begin_generation()
    assert store.fail_generation(first, "boom") is False
    assert store.state.error is None


def test_image_lands_on_moved_section():
    store, epoch = _loaded_store()
    about_key = store.section_key(1)
    store.begin_images(epoch, 3)
    store.move_section(1, 0)
    assert _names(store) == ["About", "Hero", "Contact"]
    store.commit_image(epoch, about_key, "https://img/about.png", ImageProgress(current=1, total=3))
    assert store.state.sections[0].generated_image == "https://img/about.png"
    assert store.state.sections[1].generated_image is None
    assert store.state.image_progress.current == 1


def test_image_for_deleted_section_is_ignored_but_progress_advances():
    store, epoch = _loaded_store()
    key = store.section_key(2)
    store.delete_section(2)
    store.commit_image(epoch, key, "https://img/gone.png", ImageProgress(current=1, total=3))
    assert all(s.generated_image is None for s in store.state.sections)
    assert store.state.image_progress == ImageProgress(current=1, total=3)


def test_image_from_previous_epoch_is_dropped():
    store, epoch = _loaded_store()
    key = store.section_key(0)
    next_epoch = store.begin_generation()
    store.commit_generation(next_epoch, _site())
    assert store.commit_image(epoch, key, "https://img/old.png", ImageProgress(current=1, total=1)) is False
    assert store.state.sections[0].generated_image is None


def test_second_concurrent_edit_is_rejected():
    store, _ = _loaded_store()
    token = store.acquire_edit(0)
    assert store.state.editing_index == 0
    with pytest.raises(EditInProgressError):
        store.acquire_edit(1)
    store.release_edit(token)
    assert store.state.editing_index is None
    store.release_edit(store.acquire_edit(1))


def test_edit_commit_after_regeneration_is_stale():
    store, epoch = _loaded_store()
    token = store.acquire_edit(0)
    key = store.section_key(0)
    new_epoch = store.begin_generation()
    store.commit_generation(new_epoch, _site())
    with pytest.raises(StaleResultError):
        store.commit_edit(token, epoch, key, {"content": "late"})
    store.release_edit(token)


def test_new_generation_frees_the_edit_slot():
    store, epoch = _loaded_store()
    old = store.acquire_edit(0)
    old_key = store.section_key(0)
    new_epoch = store.begin_generation()
    store.commit_generation(new_epoch, _site())
    assert store.state.editing_index is None
    fresh = store.acquire_edit(1)
    assert store.state.editing_index == 1
    with pytest.raises(StaleResultError):
        store.commit_edit(old, epoch, old_key, {"content": "late"})
    store.release_edit(old)
    assert store.state.editing_index == 1
    store.commit_edit(fresh, new_epoch, store.section_key(1), {"content": "fresh"})
    assert store.state.sections[1].content == "fresh"
    store.release_edit(fresh)
    assert store.state.editing_index is None


def test_delete_only_section_is_a_noop():
    store, _ = _loaded_store(_site(("Solo",)))
    before = store.state
    assert store.delete_section(0) is False
    assert store.state is before
    assert _names(store) == ["Solo"]


def test_reorder_takes_permutation_of_old_indices():
    store, _ = _loaded_store()
    store.reorder([2, 0, 1])
    assert _names(store) == ["Contact", "Hero", "About"]
    with pytest.raises(InputError):
        store.reorder([0, 0, 1])
    with pytest.raises(InputError):
        GenerationStateStore().reorder([])


def test_manual_image_and_index_checks():
    store, _ = _loaded_store()
    store.set_section_image(1, " https://img/mine.png ")
    assert store.state.sections[1].generated_image == "https://img/mine.png"
    with pytest.raises(InputError):
        store.set_section_image(1, "")
    with pytest.raises(InputError):
        store.set_section_image(7, "https://img/x.png")


def test_listeners_see_every_snapshot_until_unsubscribed():
    store = GenerationStateStore()
    seen = []
    unsubscribe = store.subscribe(seen.append)
    epoch = store.begin_generation()
    store.commit_generation(epoch, _site())
    unsubscribe()
    store.delete_section(0)
    assert [s.is_generating for s in seen] == [True, False]


def test_regenerate_commits_to_moved_section_and_blocks_second_request():
    store, _ = _loaded_store()
    token, epoch, key, section = store.begin_regenerate(2)
    with pytest.raises(EditInProgressError):
        store.begin_regenerate(0)
    store.move_section(2, 0)
    updated = section.model_copy(update={"generated_image": "https://img/new.png", "image_prompt": "new"})
    assert store.commit_regenerate(epoch, key, updated) is True
    store.end_regenerate(token)
    assert store.state.sections[0].name == "Contact"
    assert store.state.sections[0].generated_image == "https://img/new.png"
    assert store.state.regenerating_index is None


def test_late_regenerate_cleanup_keeps_newer_claim():
    store, _ = _loaded_store()
    old, _, _, _ = store.begin_regenerate(0)
    epoch = store.begin_generation()
    store.commit_generation(epoch, _site())
    assert store.state.regenerating_index is None
    fresh, _, _, _ = store.begin_regenerate(1)
    store.end_regenerate(old)
    assert store.state.regenerating_index == 1
    with pytest.raises(EditInProgressError):
        store.begin_regenerate(0)
    store.end_regenerate(fresh)
    assert store.state.regenerating_index is None
    store.end_regenerate(store.begin_regenerate(2)[0])


# -- session) ---------------------------------------------------------------


def _invoke_site(names=("Hero", "About", "Contact")):
    payload = json.dumps(
        {"sections": [{"name": n, "heading": n, "content": f"{n} copy", "imagePrompt": f"{n} photo"} for n in names]}
    )
    return lambda system_prompt, user_prompt: payload


def test_session_streams_events_with_middle_image_failure():
    def generate(prompt):
        if prompt.startswith("About"):
            raise SiteForgeError("Prediction failed")
        return f"https://img/{prompt.split()[0].lower()}.png"

    session = GenerationSession(invoke=_invoke_site(), image_pipeline=ImagePipeline(generate=generate))
    events = list(session.iter_generate("A bakery", "pro"))
    kinds = [e["event"] for e in events]
    assert kinds == ["meta", "website", "image_progress", "image_progress", "image_progress", "done"]
    progress = [(e["current"], e["total"]) for e in events if e["event"] == "image_progress"]
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert events[3]["error"] == "Prediction failed"
    images = [s.get("generatedImage") for s in events[-1]["website"]["sections"]]
    assert images == ["https://img/hero.png", None, "https://img/contact.png"]
    assert session.state.is_generating_images is False
    assert session.state.image_progress == ImageProgress(current=3, total=3)


def test_session_generate_raises_on_failure():
    session = GenerationSession(invoke=lambda s, u: "nope", sleep=lambda secs: None)
    with pytest.raises(SiteForgeError) as exc:
        session.generate("A bakery", with_images=False)
    assert "Generation failed after" in exc.value.message
    assert session.state.error == exc.value.message
    assert session.state.is_generating is False


def test_session_generate_keeps_error_type():
    session = GenerationSession(invoke=lambda s, u: "nope", sleep=lambda secs: None)
    with pytest.raises(GenerationExhausted) as exc:
        session.generate("A bakery", with_images=False)
    assert exc.value.attempts >= 1
    with pytest.raises(InputError) as exc:
        session.generate("   ", with_images=False)
    assert exc.value.status_code == 400
    assert session.last_error is exc.value


def test_session_edit_keeps_image_and_releases_lock():
    reply = json.dumps({"name": "About", "heading": "About", "content": "Short.", "generatedImage": "https://evil"})
    session = GenerationSession(
        invoke=_invoke_site(),
        image_pipeline=ImagePipeline(generate=lambda p: "https://img/orig.png"),
        edit_invoke=lambda s, u: reply,
    )
    session.generate("A bakery")
    edited = session.edit_section(1, "make it shorter")
    assert edited.content == "Short."
    assert edited.generated_image == "https://img/orig.png"
    assert session.state.editing_index is None

    failing = GenerationSession(store=session.store, edit_invoke=lambda s, u: "garbage")
    with pytest.raises(SiteForgeError):
        failing.edit_section(1, "again")
    assert session.state.editing_index is None
    assert session.state.sections[1].content == "Short."


def test_session_backend_requires_spec_and_uses_templates_on_failure():
    session = GenerationSession(invoke=_invoke_site(), backend_invoke=lambda s, u: "not json")
    session.generate("A bakery", with_images=False)
    with pytest.raises(InputError):
        session.generate_backend()

    backend = {"database": {"tables": [{"name": "orders", "rlsPolicy": "user_owned", "columns": [{"name": "id"}]}]}}
    site = session.state.content.model_copy(
        update={"backend": GeneratedWebsite.model_validate({"sections": [], "backend": backend}).backend}
    )
    epoch = session.store.begin_generation()
    session.store.commit_generation(epoch, site)
    code = session.generate_backend()
    assert session.state.backend_source == "template"
    assert session.state.backend_code == code
    assert session.state.is_generating_backend is False
    assert code.sql.count("auth.uid() = user_id") == 4
