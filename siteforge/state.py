"""Session-owned generation state.

:class:`GenerationStateStore` holds one immutable :class:`GenerationState`
snapshot and replaces it on every command. Asynchronous results carry the
epoch they were started under; a result whose epoch is no longer current is
dropped. Image results also carry the stable key of their section, so a
reorder or delete in the middle of a batch cannot misplace an image.

:class:`GenerationSession` wires the store to the generator, the image
pipeline, the editor and the backend synthesizer.
"""
from __future__ import annotations

import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from siteforge.backend_codegen import synthesize_backend
from siteforge.editor import EditLock, merge_section_patch, request_section_edit
from siteforge.errors import EditInProgressError, InputError, SiteForgeError, StaleResultError
from siteforge.generator import generate_website
from siteforge.images import ImagePipeline
from siteforge.models import ColorScheme, GeneratedCode, GeneratedWebsite, ImageProgress, Section

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationState:
    epoch: int = 0
    content: Optional[GeneratedWebsite] = None
    is_generating: bool = False
    is_generating_images: bool = False
    is_generating_backend: bool = False
    image_progress: ImageProgress = field(default_factory=ImageProgress)
    regenerating_index: Optional[int] = None
    editing_index: Optional[int] = None
    backend_code: Optional[GeneratedCode] = None
    backend_source: Optional[str] = None
    error: Optional[str] = None

    @property
    def sections(self) -> Tuple[Section, ...]:
        return tuple(self.content.sections) if self.content else ()


Listener = Callable[[GenerationState], None]


class GenerationStateStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = GenerationState()
        self._keys: List[int] = []
        self._key_seq = itertools.count(1)
        self._listeners: List[Listener] = []
        self._edit_lock = EditLock()
        self._regen_token: Optional[str] = None

    # -- observation -------------------------------------------------------

    @property
    def state(self) -> GenerationState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def section_key(self, index: int) -> int:
        with self._lock:
            self._check_index(index)
            return self._keys[index]

    def _commit(self, **changes: Any) -> GenerationState:
        self._state = replace(self._state, **changes)
        snapshot = self._state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("state: listener failed")
        return snapshot

    def _with_sections(self, sections: Sequence[Section]) -> GeneratedWebsite:
        assert self._state.content is not None
        return self._state.content.model_copy(update={"sections": list(sections)})

    def _check_index(self, index: int) -> None:
        if self._state.content is None:
            raise InputError("No website has been generated")
        if not 0 <= index < len(self._state.content.sections):
            raise InputError(f"Section index out of range: {index}")

    # -- generation ----------------------------------------------------------

    def begin_generation(self) -> int:
        with self._lock:
            epoch = self._state.epoch + 1
            self._commit(epoch=epoch, is_generating=True, error=None)
            return epoch

    def commit_generation(self, epoch: int, website: GeneratedWebsite) -> bool:
        with self._lock:
            if epoch != self._state.epoch:
                log.info("state: dropping stale generation epoch=%d current=%d", epoch, self._state.epoch)
                return False
            self._keys = [next(self._key_seq) for _ in website.sections]
            # in-flight edits and regenerations belong to the old content
            self._edit_lock.reset()
            self._regen_token = None
            self._commit(
                content=website,
                is_generating=False,
                is_generating_images=False,
                image_progress=ImageProgress(),
                regenerating_index=None,
                editing_index=None,
                backend_code=None,
                backend_source=None,
                error=None,
            )
            return True

    def fail_generation(self, epoch: int, message: str) -> bool:
        with self._lock:
            if epoch != self._state.epoch:
                return False
            self._commit(is_generating=False, error=message)
            return True

    # -- image batch -------------------------------------------------------------

    def begin_images(self, epoch: int, total: int) -> bool:
        with self._lock:
            if epoch != self._state.epoch:
                return False
            self._commit(is_generating_images=True, image_progress=ImageProgress(current=0, total=total))
            return True

    def commit_image(self, epoch: int, key: int, image: Optional[str], progress: ImageProgress) -> bool:
        """Record one batch step; ``image`` is None when that section's synthesis failed."""
        with self._lock:
            if epoch != self._state.epoch:
                return False
            changes: Dict[str, Any] = {"image_progress": progress}
            if image is not None and key in self._keys:
                idx = self._keys.index(key)
                sections = list(self._state.sections)
                sections[idx] = sections[idx].model_copy(update={"generated_image": image})
                changes["content"] = self._with_sections(sections)
            self._commit(**changes)
            return True

    def finish_images(self, epoch: int) -> bool:
        with self._lock:
            if epoch != self._state.epoch:
                return False
            self._commit(is_generating_images=False)
            return True

    # -- single-section edits ---------------------------------------------------

    def acquire_edit(self, index: int) -> str:
        with self._lock:
            self._check_index(index)
            token = self._edit_lock.acquire(index)
            self._commit(editing_index=index)
            return token

    def commit_edit(self, token: str, epoch: int, key: int, patch: Dict[str, Any]) -> Section:
        with self._lock:
            if not self._edit_lock.holds(token):
                raise StaleResultError("Edit is no longer active")
            if epoch != self._state.epoch or key not in self._keys:
                raise StaleResultError("Section changed while it was being edited")
            idx = self._keys.index(key)
            sections = list(self._state.sections)
            sections[idx] = merge_section_patch(sections[idx], patch)
            self._commit(content=self._with_sections(sections))
            return sections[idx]

    def release_edit(self, token: str) -> None:
        with self._lock:
            if self._edit_lock.release(token):
                self._commit(editing_index=None)

    # -- single-image regeneration ------------------------------------------------

    def begin_regenerate(self, index: int) -> Tuple[str, int, int, Section]:
        """Claim the single regeneration slot; returns (token, epoch, key, section)."""
        with self._lock:
            self._check_index(index)
            if self._regen_token is not None:
                raise EditInProgressError("Another image is already being regenerated")
            self._regen_token = uuid.uuid4().hex
            self._commit(regenerating_index=index)
            return self._regen_token, self._state.epoch, self._keys[index], self._state.sections[index]

    def commit_regenerate(self, epoch: int, key: int, section: Section) -> bool:
        with self._lock:
            if epoch != self._state.epoch or key not in self._keys:
                return False
            idx = self._keys.index(key)
            current = self._state.sections[idx]
            sections = list(self._state.sections)
            sections[idx] = current.model_copy(
                update={"generated_image": section.generated_image, "image_prompt": section.image_prompt}
            )
            self._commit(content=self._with_sections(sections))
            return True

    def end_regenerate(self, token: str) -> None:
        with self._lock:
            if token != self._regen_token:
                return
            self._regen_token = None
            self._commit(regenerating_index=None)

    # -- structural commands ----------------------------------------------------

    def reorder(self, order: Sequence[int]) -> None:
        """Rearrange sections; ``order[i]`` is the old index of the section placed at ``i``."""
        with self._lock:
            if self._state.content is None:
                raise InputError("No website has been generated")
            sections = self._state.sections
            if sorted(order) != list(range(len(sections))):
                raise InputError("Order must be a permutation of the section indices")
            self._keys = [self._keys[i] for i in order]
            self._commit(content=self._with_sections([sections[i] for i in order]))

    def move_section(self, old_index: int, new_index: int) -> None:
        with self._lock:
            n = len(self._state.sections)
            self._check_index(old_index)
            self._check_index(new_index)
            order = list(range(n))
            order.insert(new_index, order.pop(old_index))
            self.reorder(order)

    def delete_section(self, index: int) -> bool:
        """Remove one section; the last remaining section is never removed."""
        with self._lock:
            self._check_index(index)
            sections = list(self._state.sections)
            if len(sections) <= 1:
                return False
            del sections[index]
            del self._keys[index]
            self._commit(content=self._with_sections(sections))
            return True

    def set_section_image(self, index: int, url: str) -> None:
        with self._lock:
            self._check_index(index)
            if not isinstance(url, str) or not url.strip():
                raise InputError("Image URL is required")
            sections = list(self._state.sections)
            sections[index] = sections[index].model_copy(update={"generated_image": url.strip()})
            self._commit(content=self._with_sections(sections))

    # -- backend code -------------------------------------------------------------

    def begin_backend(self) -> int:
        with self._lock:
            self._commit(is_generating_backend=True)
            return self._state.epoch

    def commit_backend(self, epoch: int, code: Optional[GeneratedCode], source: Optional[str]) -> bool:
        with self._lock:
            if epoch != self._state.epoch:
                self._commit(is_generating_backend=False)
                return False
            self._commit(is_generating_backend=False, backend_code=code, backend_source=source)
            return True


class GenerationSession:
    """One user's session: commands in, snapshots out."""

    def __init__(
        self,
        store: Optional[GenerationStateStore] = None,
        *,
        invoke: Optional[Callable[[str, str], str]] = None,
        image_pipeline: Optional[ImagePipeline] = None,
        edit_invoke: Optional[Callable[[str, str], str]] = None,
        backend_invoke: Optional[Callable[[str, str], str]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.store = store or GenerationStateStore()
        self._invoke = invoke
        self._images = image_pipeline or ImagePipeline()
        self._edit_invoke = edit_invoke
        self._backend_invoke = backend_invoke
        self._sleep = sleep
        self.last_error: Optional[SiteForgeError] = None

    @property
    def state(self) -> GenerationState:
        return self.store.state

    def iter_generate(
        self,
        prompt: str,
        tier: str = "free",
        color_scheme: Optional[ColorScheme] = None,
        *,
        with_images: bool = True,
    ) -> Iterator[Dict[str, Any]]:
        """Run a full generation, yielding one event dict per observable step."""
        self.last_error = None
        epoch = self.store.begin_generation()
        yield {"event": "meta", "epoch": epoch, "tier": tier}
        kwargs: Dict[str, Any] = {"invoke": self._invoke}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        try:
            website = generate_website(prompt, tier, color_scheme, **kwargs)
        except SiteForgeError as exc:
            self.store.fail_generation(epoch, exc.message)
            self.last_error = exc
            yield {"event": "error", "error": exc.message}
            return
        if not self.store.commit_generation(epoch, website):
            yield self._superseded()
            return
        yield {"event": "website", "website": website.to_wire()}

        if with_images:
            keys = [self.store.section_key(i) for i in range(len(website.sections))]
            total = sum(1 for s in website.sections if s.image_prompt)
            if total and self.store.begin_images(epoch, total):
                for update in self._images.iter_run(website.sections):
                    if not self.store.commit_image(epoch, keys[update.index], update.image, update.progress):
                        yield self._superseded()
                        return
                    yield {
                        "event": "image_progress",
                        "index": update.index,
                        "image": update.image,
                        "error": update.error,
                        "current": update.progress.current,
                        "total": update.progress.total,
                    }
                self.store.finish_images(epoch)

        final = self.store.state.content
        yield {"event": "done", "website": final.to_wire() if final else None}

    def generate(
        self,
        prompt: str,
        tier: str = "free",
        color_scheme: Optional[ColorScheme] = None,
        *,
        with_images: bool = True,
    ) -> GenerationState:
        """Drain :meth:`iter_generate`; a failed run re-raises its original error."""
        for event in self.iter_generate(prompt, tier, color_scheme, with_images=with_images):
            if event["event"] == "error":
                assert self.last_error is not None
                raise self.last_error
        return self.store.state

    def _superseded(self) -> Dict[str, Any]:
        self.last_error = StaleResultError("Superseded by a newer generation")
        return {"event": "error", "error": self.last_error.message}

    def edit_section(self, index: int, instructions: str) -> Section:
        token = self.store.acquire_edit(index)
        try:
            epoch = self.store.state.epoch
            key = self.store.section_key(index)
            section = self.store.state.sections[index]
            patch = request_section_edit(section, instructions, invoke=self._edit_invoke)
            return self.store.commit_edit(token, epoch, key, patch)
        finally:
            self.store.release_edit(token)

    def regenerate_image(self, index: int, custom_prompt: Optional[str] = None) -> Section:
        token, epoch, key, section = self.store.begin_regenerate(index)
        try:
            updated = self._images.regenerate(section, custom_prompt)
            if not self.store.commit_regenerate(epoch, key, updated):
                raise StaleResultError("Section changed while its image was regenerating")
            return updated
        finally:
            self.store.end_regenerate(token)

    def generate_backend(self) -> GeneratedCode:
        content = self.store.state.content
        if content is None or content.backend is None:
            raise InputError("Backend specification is required")
        epoch = self.store.begin_backend()
        try:
            code, source = synthesize_backend(content.backend, invoke=self._backend_invoke)
        except Exception:
            self.store.commit_backend(epoch, None, None)
            raise
        self.store.commit_backend(epoch, code, source)
        return code

    def reorder(self, order: Sequence[int]) -> None:
        self.store.reorder(order)

    def delete_section(self, index: int) -> bool:
        return self.store.delete_section(index)

    def set_section_image(self, index: int, url: str) -> None:
        self.store.set_section_image(index, url)
