"""
Content Saver
=============
Persists scraped documents as JSON files, one per scrape.

Layout::

    <root>/<tenant>/<domain>/<YYYY>/<MM>/<epoch-ms>_<title-slug>.json

Save failures raise ``SaveError``; the scheduler logs them against the run
and never retries or fails the URL because of them.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import SaveError
from .models import new_id, utcnow
from .utils import normalize_host, safe_file_name

logger = logging.getLogger(__name__)


class ContentSaver(Protocol):
    def save(self, tenant_id: str, url: str, content: str, metadata: Dict[str, Any]) -> str:
        ...


def _safe_domain(domain: str) -> str:
    return "".join(ch if ch.isalnum() or ch in ".-" else "_" for ch in domain.lower()) or "unknown"


class FileContentSaver:
    """Writes documents under ``root`` using the dated directory layout."""

    def __init__(self, root: str = "scraped"):
        self.root = Path(root)
        self._lock = threading.Lock()

    def save(self, tenant_id: str, url: str, content: str, metadata: Dict[str, Any]) -> str:
        """Write one document and return its path as the storage reference.

        Raises:
            SaveError: if the file cannot be written.
        """
        now = utcnow()
        domain = normalize_host(url) or "unknown"
        directory = self.root / safe_file_name(tenant_id) / _safe_domain(domain) / f"{now:%Y}" / f"{now:%m}"
        stem = f"{int(now.timestamp() * 1000)}_{safe_file_name(metadata.get('title') or 'untitled')}"

        document = {
            "id": new_id(),
            "tenant_id": tenant_id,
            "source": domain,
            "url": url,
            "title": metadata.get("title", ""),
            "content": content,
            "timestamp": now.isoformat(),
            "metadata": {"domain": domain, "word_count": len(content.split()), **metadata},
        }

        try:
            with self._lock:
                directory.mkdir(parents=True, exist_ok=True)
                path = directory / f"{stem}.json"
                n = 1
                while path.exists():
                    path = directory / f"{stem}_{n}.json"
                    n += 1
                path.write_text(json.dumps(document, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        except OSError as exc:
            raise SaveError(f"Could not save {url}: {exc}") from exc

        logger.info(f"[SAVE] {url[:80]} -> {path}")
        return str(path)

    def list_saved(
        self,
        tenant_id: str,
        domain: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[dict]:
        """Saved documents for a tenant, newest first, optionally filtered."""
        base = self.root / safe_file_name(tenant_id)
        if not base.exists():
            return []
        domains = [base / _safe_domain(domain)] if domain else [p for p in base.iterdir() if p.is_dir()]

        results: List[dict] = []
        for domain_dir in domains:
            for path in sorted(domain_dir.glob("*/*/*.json")):
                try:
                    doc = json.loads(path.read_text(encoding="utf-8"))
                except (json.JSONDecodeError, OSError) as exc:
                    logger.warning(f"[SAVE] Unreadable document {path}: {exc}")
                    continue
                stamp = datetime.fromisoformat(doc["timestamp"])
                if start and stamp < start:
                    continue
                if end and stamp > end:
                    continue
                doc["file_path"] = str(path)
                results.append(doc)
        results.sort(key=lambda d: d["timestamp"], reverse=True)
        return results

    def cleanup_older_than(self, days: int) -> int:
        """Delete documents older than *days*; returns how many were removed."""
        cutoff_ms = int((utcnow() - timedelta(days=days)).timestamp() * 1000)
        removed = 0
        if not self.root.exists():
            return 0
        for path in self.root.glob("*/*/*/*/*.json"):
            prefix = path.name.split("_", 1)[0]
            if prefix.isdigit() and int(prefix) < cutoff_ms:
                try:
                    path.unlink()
                    removed += 1
                except OSError as exc:
                    logger.warning(f"[SAVE] Could not delete {path}: {exc}")
        logger.info(f"[SAVE] Cleanup removed {removed} documents older than {days} days")
        return removed
