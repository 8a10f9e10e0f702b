"""
SSO Session Providers
=====================
The host application's single sign-on session, as seen by the scraper.

Internal hosts (SharePoint, Confluence, intranet portals) are never logged
into with stored credentials.  Instead the host application hands over the
session it already holds, and the orchestrator replays it.

Implementations:
    - ``NoSsoSessionProvider``        — no host session available
    - ``StorageStateSessionProvider`` — a browser ``storage_state`` JSON
                                        exported by the host (cookies +
                                        localStorage), validated for age
                                        and cookie presence per domain
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Protocol

from ..errors import CredentialMissing
from ..models import AuthContext, AuthType, FetchResult

logger = logging.getLogger(__name__)

_MAX_SESSION_AGE_HOURS = 8


class HostSessionProvider(Protocol):
    def has_active_sso_session(self, domain: str) -> bool:
        ...

    async def resume_sso_session(self, domain: str, url: str) -> FetchResult:
        ...


class NoSsoSessionProvider:
    """Host without SSO integration: every internal login needs user action."""

    def has_active_sso_session(self, domain: str) -> bool:
        return False

    async def resume_sso_session(self, domain: str, url: str) -> FetchResult:
        raise CredentialMissing(
            f"No single sign-on session available for {domain}",
            domain=domain,
            auth_type=AuthType.SSO.value,
        )


def _cookie_matches(cookie_domain: str, host: str) -> bool:
    cookie_domain = (cookie_domain or "").lstrip(".").lower()
    return bool(cookie_domain) and (host == cookie_domain or host.endswith("." + cookie_domain))


class StorageStateSessionProvider:
    """Replays cookies from a Playwright ``storage_state`` export.

    A session counts as active for a domain when the file is readable JSON,
    is younger than ``max_age_hours`` and holds at least one cookie scoped
    to that domain.
    """

    def __init__(self, state_path: str, fetcher, *, max_age_hours: float = _MAX_SESSION_AGE_HOURS):
        """
        Args:
            state_path:    Path to the exported storage-state JSON.
            fetcher:       ``PageFetcher`` used to replay the session.
            max_age_hours: Maximum age of the export.
        """
        self.state_path = state_path
        self.fetcher = fetcher
        self.max_age_hours = max_age_hours

    def _cookies_for(self, domain: str) -> List[dict]:
        path = Path(self.state_path)
        if not path.exists():
            logger.info("[SESSION] No host session file found")
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[SESSION] Corrupt host session file: {exc}")
            return []

        age_hours = (time.time() - path.stat().st_mtime) / 3600
        if age_hours > self.max_age_hours:
            logger.info(
                f"[SESSION] Host session is {age_hours:.1f}h old, expired "
                f"(max {self.max_age_hours}h)"
            )
            return []

        host = domain.lower()
        now = time.time()
        return [
            c for c in data.get("cookies", [])
            if _cookie_matches(c.get("domain", ""), host)
            and (c.get("expires", -1) in (-1, None) or c["expires"] > now)
        ]

    def has_active_sso_session(self, domain: str) -> bool:
        cookies = self._cookies_for(domain)
        logger.info(f"[SESSION] {domain}: {len(cookies)} host session cookies")
        return bool(cookies)

    async def resume_sso_session(self, domain: str, url: str) -> FetchResult:
        cookies: Dict[str, str] = {c["name"]: c.get("value", "") for c in self._cookies_for(domain)}
        if not cookies:
            raise CredentialMissing(
                f"Host session for {domain} expired before it could be resumed",
                domain=domain,
                auth_type=AuthType.SSO.value,
            )
        return await self.fetcher.fetch(
            url, auth=AuthContext(auth_type=AuthType.SSO, payload={"cookies": cookies})
        )
