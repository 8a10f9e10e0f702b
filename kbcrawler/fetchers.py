"""
Page Fetchers
=============
The page-fetching capability the orchestrator drives.

Implementations:
    - ``RequestsPageFetcher``   — static HTTP via ``requests`` in the default executor
    - ``PlaywrightPageFetcher`` — headless Chromium for JS-rendered pages
    - ``RoutingPageFetcher``    — static by default, browser when dynamic
                                  content is requested

Every fetcher accepts an optional ``AuthContext`` and applies it the way
the auth type demands (basic auth, headers, cookies, or a form post).
Network failures and timeouts surface as ``FetchError``.

Security:
    - Credential payloads are never logged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Protocol

import requests
from bs4 import BeautifulSoup

from .errors import FetchError
from .models import AuthContext, AuthType, FetchResult
from .utils import normalize_host

logger = logging.getLogger(__name__)

try:
    import lxml  # noqa: F401
    _BS_PARSER = "lxml"
except ImportError:
    _BS_PARSER = "html.parser"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class PageFetcher(Protocol):
    async def fetch(
        self,
        url: str,
        *,
        wait_for_dynamic_content: bool = False,
        auth: Optional[AuthContext] = None,
    ) -> FetchResult:
        ...


def _cookie_payload(auth: AuthContext) -> Dict[str, str]:
    return dict(auth.payload.get("cookies") or {})


def _fresh_hidden_fields(html: str) -> Dict[str, str]:
    """Hidden inputs of the form that holds the password field (CSRF tokens)."""
    soup = BeautifulSoup(html or "", _BS_PARSER)
    pwd = soup.find("input", attrs={"type": "password"})
    form = pwd.find_parent("form") if pwd is not None else soup.find("form")
    if form is None:
        return {}
    return {
        inp["name"]: inp.get("value", "")
        for inp in form.find_all("input", attrs={"type": "hidden"})
        if inp.get("name")
    }


# ---------------------------------------------------------------------------
# Static fetcher
# ---------------------------------------------------------------------------

class RequestsPageFetcher:
    """Static fetcher: one ``requests.Session`` per call, run off the event loop."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 20.0):
        self.user_agent = user_agent
        self.timeout = timeout

    async def fetch(
        self,
        url: str,
        *,
        wait_for_dynamic_content: bool = False,
        auth: Optional[AuthContext] = None,
    ) -> FetchResult:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._fetch_sync, url, auth)
        except requests.RequestException as exc:
            raise FetchError(
                f"Fetch failed for {url}: {type(exc).__name__}",
                domain=normalize_host(url) or "",
            ) from exc

    def _session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            'User-Agent': self.user_agent,
            'Accept': 'text/html,application/xhtml+xml',
            'Accept-Language': 'en-US,en;q=0.9',
        })
        return session

    def _fetch_sync(self, url: str, auth: Optional[AuthContext]) -> FetchResult:
        with self._session() as session:
            if auth is not None:
                self._apply_auth(session, url, auth)
            resp = session.get(url, timeout=self.timeout)

        if resp.status_code >= 500:
            raise FetchError(
                f"HTTP {resp.status_code} from {url}",
                domain=normalize_host(url) or "",
            )
        logger.debug(f"[FETCH] {url[:80]} -> HTTP {resp.status_code}")
        return FetchResult(
            html=resp.text,
            final_url=resp.url,
            status_code=resp.status_code,
            headers=dict(resp.headers),
        )

    def _apply_auth(self, session: requests.Session, url: str, auth: AuthContext) -> None:
        payload = auth.payload
        if auth.auth_type is AuthType.BASIC:
            session.auth = (payload.get("username", ""), payload.get("password", ""))
        elif auth.auth_type is AuthType.HEADER:
            session.headers.update(payload.get("headers") or {})
        elif auth.auth_type in (AuthType.COOKIE, AuthType.SSO):
            for name, value in _cookie_payload(auth).items():
                session.cookies.set(name, value)
        elif auth.auth_type is AuthType.FORM:
            self._submit_form(session, url, auth)

    def _submit_form(self, session: requests.Session, url: str, auth: AuthContext) -> None:
        """GET the login page, merge hidden fields, POST the credentials."""
        detection = auth.detection
        login_url = auth.login_url or url
        page = session.get(login_url, timeout=self.timeout)

        data = dict(detection.hidden_fields)
        data.update(_fresh_hidden_fields(page.text))
        data[detection.username_field or "username"] = auth.payload.get("username", "")
        data[detection.password_field or "password"] = auth.payload.get("password", "")

        action = detection.form_action or page.url
        resp = session.post(action, data=data, timeout=self.timeout, allow_redirects=True)
        logger.info(f"[FETCH] Form submitted to {action[:80]} (HTTP {resp.status_code})")


# ---------------------------------------------------------------------------
# Browser fetcher
# ---------------------------------------------------------------------------

class PlaywrightPageFetcher:
    """Headless Chromium fetcher, launched on first use.

    Each fetch gets its own browser context so cookies never leak between
    tenants.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 20.0,
        headless: bool = True,
    ):
        self.user_agent = user_agent
        self.timeout_ms = int(timeout * 1000)
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None:
                from playwright.async_api import async_playwright

                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=['--disable-gpu', '--no-sandbox', '--disable-dev-shm-usage'],
                )
                logger.info("[FETCH] Playwright browser launched")
        return self._browser

    async def fetch(
        self,
        url: str,
        *,
        wait_for_dynamic_content: bool = False,
        auth: Optional[AuthContext] = None,
    ) -> FetchResult:
        from playwright.async_api import Error as PlaywrightError

        browser = await self._ensure_browser()
        ctx_kwargs = dict(user_agent=self.user_agent, locale='en-US')
        if auth is not None and auth.auth_type is AuthType.BASIC:
            ctx_kwargs["http_credentials"] = {
                "username": auth.payload.get("username", ""),
                "password": auth.payload.get("password", ""),
            }
        if auth is not None and auth.auth_type is AuthType.HEADER:
            ctx_kwargs["extra_http_headers"] = dict(auth.payload.get("headers") or {})

        context = await browser.new_context(**ctx_kwargs)
        try:
            if auth is not None and auth.auth_type in (AuthType.COOKIE, AuthType.SSO):
                await context.add_cookies([
                    {"name": k, "value": v, "url": url} for k, v in _cookie_payload(auth).items()
                ])
            page = await context.new_page()
            if auth is not None and auth.auth_type is AuthType.FORM:
                await self._submit_form(page, url, auth)

            wait_until = "networkidle" if wait_for_dynamic_content else "load"
            resp = await page.goto(url, timeout=self.timeout_ms, wait_until=wait_until)
            html = await page.content()
            return FetchResult(
                html=html,
                final_url=page.url,
                status_code=resp.status if resp else 200,
                headers=dict(resp.headers) if resp else {},
            )
        except PlaywrightError as exc:
            raise FetchError(
                f"Browser fetch failed for {url}: {type(exc).__name__}",
                domain=normalize_host(url) or "",
            ) from exc
        finally:
            await context.close()

    async def _submit_form(self, page, url: str, auth: AuthContext) -> None:
        """Fill the detected selectors and click submit."""
        from playwright.async_api import TimeoutError as PlaywrightTimeout

        detection = auth.detection
        await page.goto(auth.login_url or url, timeout=self.timeout_ms, wait_until="load")
        if detection.username_selector:
            await page.fill(detection.username_selector, auth.payload.get("username", ""))
        if detection.password_selector:
            await page.fill(detection.password_selector, auth.payload.get("password", ""))
        if detection.submit_selector:
            await page.click(detection.submit_selector)
        elif detection.password_selector:
            await page.press(detection.password_selector, "Enter")
        try:
            await page.wait_for_load_state("networkidle", timeout=10_000)
        except PlaywrightTimeout:
            logger.debug("[FETCH] networkidle timeout after login submit, continuing")
        logger.info(f"[FETCH] Browser login submitted on {(auth.login_url or url)[:80]}")

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RoutingPageFetcher:
    """Static fetch unless the caller asks to wait for dynamic content."""

    def __init__(self, static: PageFetcher, dynamic: Optional[PageFetcher] = None):
        self.static = static
        self.dynamic = dynamic

    async def fetch(
        self,
        url: str,
        *,
        wait_for_dynamic_content: bool = False,
        auth: Optional[AuthContext] = None,
    ) -> FetchResult:
        fetcher = self.dynamic if (wait_for_dynamic_content and self.dynamic) else self.static
        return await fetcher.fetch(url, wait_for_dynamic_content=wait_for_dynamic_content, auth=auth)

    async def close(self) -> None:
        for fetcher in (self.static, self.dynamic):
            close = getattr(fetcher, "close", None)
            if close is not None:
                await close()
