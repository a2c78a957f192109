"""Saved website snapshots, addressable by id (owner) and by slug (public).

Each snapshot is one JSON file under ``WEBSITES_DIR`` named by its id.
Writes go to a temp file first and are then swapped into place.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import string
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from siteforge.errors import NotFoundError
from siteforge.models import GeneratedWebsite, Section

log = logging.getLogger(__name__)

WEBSITES_DIR = Path(os.getenv("WEBSITES_DIR", "cache/websites"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

SLUG_ALPHABET = string.ascii_lowercase + string.digits
SLUG_LENGTH = 8


def generate_slug(length: int = SLUG_LENGTH) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def share_url(slug: str) -> str:
    return f"{PUBLIC_BASE_URL}/site/{slug}"


class WebsiteRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    slug: str = Field(default_factory=generate_slug)
    user_id: str
    prompt: str = ""
    tier: str = "free"
    edit_count: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    website: GeneratedWebsite

    def public_view(self) -> Dict[str, Any]:
        """What an anonymous visitor may see (no owner or rationale fields)."""
        data = self.website.to_wire()
        data.pop("internalExplanation", None)
        data.pop("backend", None)
        return {"slug": self.slug, "prompt": self.prompt, "createdAt": self.created_at, "website": data}

    def owner_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "url": share_url(self.slug),
            "prompt": self.prompt,
            "tier": self.tier,
            "editCount": self.edit_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "website": self.website.to_wire(),
        }


class FileWebsiteRepository:
    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else WEBSITES_DIR
        self._lock = threading.Lock()

    def _path(self, record_id: str) -> Path:
        # ids are generated hex strings; anything else cannot name a file here
        if not record_id or not all(c in string.hexdigits for c in record_id):
            raise NotFoundError("Website not found")
        return self.root / f"{record_id}.json"

    def _write(self, record: WebsiteRecord) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(record.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(record.model_dump_json(by_alias=False), encoding="utf-8")
        tmp.replace(path)

    def _read(self, path: Path) -> Optional[WebsiteRecord]:
        try:
            return WebsiteRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            log.warning("sharing: unreadable record %s", path.name, exc_info=True)
            return None

    def _all(self) -> List[WebsiteRecord]:
        if not self.root.exists():
            return []
        records = [self._read(p) for p in sorted(self.root.glob("*.json"))]
        return [r for r in records if r is not None]

    def save(self, user_id: str, website: GeneratedWebsite, *, prompt: str = "", tier: str = "free") -> WebsiteRecord:
        with self._lock:
            taken = {r.slug for r in self._all()}
            slug = generate_slug()
            while slug in taken:
                slug = generate_slug()
            record = WebsiteRecord(user_id=user_id, website=website, prompt=prompt, tier=tier, slug=slug)
            self._write(record)
        log.info("sharing: saved id=%s slug=%s user=%s", record.id, record.slug, user_id)
        return record

    def get(self, record_id: str) -> Optional[WebsiteRecord]:
        return self._read(self._path(record_id))

    def get_owned(self, record_id: str, user_id: str) -> WebsiteRecord:
        record = self.get(record_id)
        # someone else's record is reported exactly like a missing one
        if record is None or record.user_id != user_id:
            raise NotFoundError("Website not found")
        return record

    def get_by_slug(self, slug: str) -> Optional[WebsiteRecord]:
        for record in self._all():
            if record.slug == slug:
                return record
        return None

    def list_for_user(self, user_id: str) -> List[WebsiteRecord]:
        records = [r for r in self._all() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def update_sections(self, record_id: str, user_id: str, sections: Sequence[Section]) -> WebsiteRecord:
        with self._lock:
            record = self.get_owned(record_id, user_id)
            website = record.website.model_copy(update={"sections": list(sections)})
            record = record.model_copy(update={"website": website, "updated_at": time.time()})
            self._write(record)
        return record

    def increment_edit_count(self, record_id: str, user_id: str) -> WebsiteRecord:
        with self._lock:
            record = self.get_owned(record_id, user_id)
            record = record.model_copy(update={"edit_count": record.edit_count + 1, "updated_at": time.time()})
            self._write(record)
        return record

    def delete(self, record_id: str, user_id: str) -> None:
        with self._lock:
            self.get_owned(record_id, user_id)
            self._path(record_id).unlink(missing_ok=True)
        log.info("sharing: deleted id=%s user=%s", record_id, user_id)


_repo: Optional[FileWebsiteRepository] = None


def get_repository() -> FileWebsiteRepository:
    global _repo
    if _repo is None:
        _repo = FileWebsiteRepository()
    return _repo


def _reset(root: Optional[Path] = None) -> None:
    """Used by tests to point the repository at a fresh directory."""
    global _repo
    _repo = FileWebsiteRepository(root) if root is not None else None
