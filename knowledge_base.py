"""Per-user knowledge base of reusable prompt fragments and full prompts.

Entries live in SQLite (see db.py); their source thumbnails are written to
``<data_dir>/<user_id>/images/`` and referenced as ``/api/images/<user>/<file>``.
Deletion is two-step: ``soft_delete`` moves entries to the trash, and
``purge_expired_trash`` removes anything that has been there longer than the
retention window.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set, Union

import db
import storage
from errors import ValidationError
from models import (
    FRAGMENT_CATEGORIES,
    FullPrompt,
    ImageUpload,
    KnowledgeBaseAnalysis,
    KnowledgeBaseCategory,
    KnowledgeBaseEntry,
    decode_data_uri,
    is_data_uri,
)

log = logging.getLogger(__name__)

USER_ID_RE = re.compile(r"^[a-zA-Z0-9-]+$")
DAY_SECONDS = 24 * 60 * 60

USAGE_WEIGHT = 0.4
SIMILARITY_WEIGHT = 0.6

_STRIP_RE = re.compile(r"[^\w\s\u4e00-\u9fa5]")


def validate_user_id(user_id: str) -> str:
    if not user_id or not USER_ID_RE.match(user_id):
        raise ValidationError("Invalid user id: only letters, digits and '-' are allowed.")
    return user_id


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def tokenize(text: str) -> Set[str]:
    return set(_STRIP_RE.sub("", (text or "").lower()).split())


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _entry_text(entry: KnowledgeBaseEntry) -> str:
    text = entry.prompt_fragment
    if entry.full_prompt:
        text += f" {entry.full_prompt.consistent_prompt} {entry.full_prompt.variable_prompt}"
    return text


def rank_entries(
    entries: Sequence[KnowledgeBaseEntry],
    context: str = "",
    category: Optional[Union[str, KnowledgeBaseCategory]] = None,
    query: str = "",
    view: str = "active",
) -> List[KnowledgeBaseEntry]:
    """Filter entries and order them by relevance to *context*.

    score = 0.4 × usage / max usage + 0.6 × Jaccard(context tokens, entry tokens)
    """
    if view == "trash":
        pool = [e for e in entries if e.is_deleted]
    else:
        pool = [e for e in entries if not e.is_deleted]

    if category and category != "all":
        cat = KnowledgeBaseCategory(category)
        pool = [e for e in pool if e.category is cat]

    q = (query or "").strip().lower()
    if q:
        pool = [
            e for e in pool
            if q in e.prompt_fragment.lower()
            or q in e.category.value
            or q in e.category.label.lower()
        ]

    max_usage = max([e.usage_count for e in pool] + [1])
    context_tokens = tokenize(context)

    def score(entry: KnowledgeBaseEntry) -> float:
        usage = entry.usage_count / max_usage
        return USAGE_WEIGHT * usage + SIMILARITY_WEIGHT * jaccard(context_tokens, tokenize(_entry_text(entry)))

    return sorted(pool, key=score, reverse=True)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class KnowledgeBaseService:
    def __init__(
        self,
        user_id: str,
        data_dir: Union[str, Path],
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_id = validate_user_id(user_id)
        self.images_dir = Path(data_dir) / user_id / "images"
        self.retention_days = retention_days
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, include_deleted: bool = False) -> List[KnowledgeBaseEntry]:
        return [
            KnowledgeBaseEntry.from_dict(row)
            for row in db.list_entries(self.user_id, include_deleted=include_deleted)
        ]

    def trash(self) -> List[KnowledgeBaseEntry]:
        return [KnowledgeBaseEntry.from_dict(row) for row in db.list_deleted(self.user_id)]

    def get(self, entry_id: str) -> Optional[KnowledgeBaseEntry]:
        row = db.get_entry(self.user_id, entry_id)
        return KnowledgeBaseEntry.from_dict(row) if row else None

    def image_path(self, filename: str) -> Path:
        return self.images_dir / filename

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def increment_usage(self, entry_id: str) -> bool:
        return db.increment_usage(self.user_id, entry_id)

    def soft_delete(self, ids: Iterable[str]) -> int:
        count = db.set_deleted_at(self.user_id, list(ids), self.clock())
        log.info("KB [%s]: moved %d entr(ies) to trash", self.user_id, count)
        return count

    def restore(self, ids: Iterable[str]) -> int:
        return db.set_deleted_at(self.user_id, list(ids), None)

    def permanently_delete(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        images = {e.source_image_preview for e in (self.get(i) for i in ids) if e}
        count = db.delete_entries(self.user_id, ids)
        for ref in images:
            self._remove_orphan_image(ref)
        if count:
            log.info("KB [%s]: permanently deleted %d entr(ies)", self.user_id, count)
        return count

    def purge_expired_trash(self) -> int:
        cutoff = self.clock() - self.retention_days * DAY_SECONDS
        return self.permanently_delete(db.expired_ids(self.user_id, cutoff))

    def save(
        self,
        entries: Sequence[KnowledgeBaseEntry],
        source_image: Optional[Union[ImageUpload, str]] = None,
    ) -> List[KnowledgeBaseEntry]:
        """Store new entries; *source_image* becomes their shared thumbnail.

        Entries that carry an inline ``data:`` preview get it written to disk
        and replaced with a served URL.
        """
        shared_ref = self._store_image(source_image) if source_image is not None else None
        for entry in entries:
            if shared_ref and not entry.source_image_preview:
                entry.source_image_preview = shared_ref
            elif is_data_uri(entry.source_image_preview):
                entry.source_image_preview = self._store_image(entry.source_image_preview) or ""
        db.insert_entries(self.user_id, [e.to_dict() for e in entries])
        log.info("KB [%s]: saved %d entr(ies)", self.user_id, len(entries))
        return list(entries)

    def save_analysis(
        self,
        analysis: KnowledgeBaseAnalysis,
        source_image: Optional[Union[ImageUpload, str]] = None,
    ) -> List[KnowledgeBaseEntry]:
        """Save one full-prompt entry plus one entry per fragment, linked by a group id."""
        group_id = str(uuid.uuid4())
        holistic = analysis.holistic_description
        variable = " ".join(
            analysis.fragments[cat]
            for cat in (KnowledgeBaseCategory.POSE, KnowledgeBaseCategory.COMPOSITION)
            if cat in analysis.fragments
        )
        title = holistic.splitlines()[0] if holistic else ""
        entries = [
            KnowledgeBaseEntry(
                category=KnowledgeBaseCategory.FULL_PROMPT,
                prompt_fragment=f"Full prompt: {title[:80]}",
                full_prompt=FullPrompt(consistent_prompt=holistic, variable_prompt=variable),
                group_id=group_id,
            )
        ]
        for cat in FRAGMENT_CATEGORIES:
            text = analysis.fragments.get(cat)
            if text:
                entries.append(KnowledgeBaseEntry(category=cat, prompt_fragment=text, group_id=group_id))
        return self.save(entries, source_image)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _store_image(self, image: Union[ImageUpload, str]) -> Optional[str]:
        if isinstance(image, str):
            if not is_data_uri(image):
                return image  # already a served URL
            try:
                _mime, data = decode_data_uri(image)
            except ValueError as exc:
                log.warning("KB [%s]: unreadable inline image: %s", self.user_id, exc)
                return None
        else:
            data = image.data
        try:
            thumb = storage.make_thumbnail(data)
        except OSError as exc:
            log.warning("KB [%s]: could not build thumbnail: %s", self.user_id, exc)
            return None
        self.images_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid.uuid4()}.jpg"
        (self.images_dir / filename).write_bytes(thumb)
        return f"/api/images/{self.user_id}/{filename}"

    def _remove_orphan_image(self, ref: str) -> None:
        prefix = f"/api/images/{self.user_id}/"
        if not ref or not ref.startswith(prefix):
            return
        if db.image_in_use(self.user_id, ref):
            return
        path = self.images_dir / ref[len(prefix):]
        try:
            path.unlink()
        except FileNotFoundError:
            pass
