"""
Change Detector
===============
Tracks how much a page's content drifts between scrapes.

- The first observation of a (tenant, url) pair reports 0% and is never major.
- Identical content (same normalised SHA-256) short-circuits to 0%.
- Otherwise a word-level ``difflib.SequenceMatcher`` comparison gives
  ``change_percentage = (1 - similarity) * 100``.
- The new content ALWAYS becomes the baseline, major change or not.
"""

from __future__ import annotations

import difflib
import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from .models import ContentSnapshot
from .utils import ContentHasher

logger = logging.getLogger(__name__)

_SIGNIFICANT_CHANGE = 5.0


@dataclass(frozen=True)
class ChangeReport:
    change_percentage: float
    is_major: bool
    is_first_observation: bool = False
    has_significant_changes: bool = False
    added_words: int = 0
    removed_words: int = 0
    summary: str = ""


class SnapshotStore:
    """In-memory snapshot history per (tenant, url), newest last.

    Only the newest entry carries its page text (the next comparison's
    baseline); older entries are metadata-only audit records.
    """

    def __init__(self):
        self._history: Dict[Tuple[str, str], List[Tuple[ContentSnapshot, Optional[str]]]] = {}
        self._lock = threading.Lock()

    def latest(self, tenant_id: str, url: str) -> Optional[Tuple[ContentSnapshot, str]]:
        with self._lock:
            entries = self._history.get((tenant_id, url))
            return entries[-1] if entries else None

    def advance(self, snapshot: ContentSnapshot, text: str) -> Optional[Tuple[ContentSnapshot, str]]:
        """Append a new baseline and return the one it replaces, atomically."""
        with self._lock:
            entries = self._history.setdefault((snapshot.tenant_id, snapshot.url), [])
            previous = entries[-1] if entries else None
            if previous is not None:
                entries[-1] = (previous[0], None)
            entries.append((snapshot, text))
            return previous

    def attach_ref(self, tenant_id: str, url: str, content_hash: str, content_ref: str) -> bool:
        """Point the newest snapshot at its stored document if it still has *content_hash*."""
        with self._lock:
            entries = self._history.get((tenant_id, url))
            if not entries or entries[-1][0].content_hash != content_hash:
                return False
            snapshot, text = entries[-1]
            entries[-1] = (replace(snapshot, content_ref=content_ref), text)
            return True

    def entries(self, tenant_id: str, url: str) -> List[Tuple[ContentSnapshot, Optional[str]]]:
        with self._lock:
            return list(self._history.get((tenant_id, url), []))

    def history(self, tenant_id: str, url: str) -> List[ContentSnapshot]:
        with self._lock:
            return [s for s, _ in self._history.get((tenant_id, url), [])]


def word_diff(old: str, new: str) -> Tuple[float, int, int]:
    """Similarity ratio plus added / removed word counts."""
    a, b = old.split(), new.split()
    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
    added = removed = 0
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            removed += i2 - i1
        if tag in ("replace", "insert"):
            added += j2 - j1
    return matcher.ratio(), added, removed


class ChangeDetector:
    def __init__(self, snapshot_store: Optional[SnapshotStore] = None, major_change_threshold: float = 50.0):
        self.store = snapshot_store or SnapshotStore()
        self.major_change_threshold = major_change_threshold

    def detect_change(self, tenant_id: str, url: str, new_content: str, *, content_ref: str = "") -> ChangeReport:
        """Compare *new_content* with the baseline and advance the baseline.

        Args:
            tenant_id:   Owning tenant.
            url:         Page URL.
            new_content: Extracted page text.
            content_ref: Storage reference of the saved document, if any.

        Returns:
            A ``ChangeReport``.
        """
        digest = ContentHasher.hash_content(new_content)
        snapshot = ContentSnapshot(url=url, tenant_id=tenant_id, content_hash=digest, content_ref=content_ref)
        previous = self.store.advance(snapshot, new_content)

        if previous is None:
            logger.info(f"[CHANGE] First observation of {url[:80]}")
            return ChangeReport(0.0, False, is_first_observation=True, summary="First observation")

        old_snapshot, old_text = previous
        if old_snapshot.content_hash == digest:
            return ChangeReport(0.0, False, summary="No changes detected")

        ratio, added, removed = word_diff(old_text, new_content)
        pct = round((1.0 - ratio) * 100, 2)
        summary = ", ".join(
            part for part in (
                f"+{added} words added" if added else "",
                f"-{removed} words removed" if removed else "",
            ) if part
        ) or "Minor changes detected"
        is_major = pct > self.major_change_threshold

        log = logger.warning if is_major else logger.info
        log(f"[CHANGE] {url[:80]}: {pct}% changed ({summary}){' MAJOR' if is_major else ''}")
        return ChangeReport(
            change_percentage=pct,
            is_major=is_major,
            has_significant_changes=pct > _SIGNIFICANT_CHANGE,
            added_words=added,
            removed_words=removed,
            summary=summary,
        )

    def record_content_ref(self, tenant_id: str, url: str, content_hash: str, content_ref: str) -> None:
        """Attach the storage reference of a document saved after ``detect_change``."""
        if not self.store.attach_ref(tenant_id, url, content_hash, content_ref):
            logger.debug(f"[CHANGE] Baseline for {url[:80]} moved on, storage ref not attached")
