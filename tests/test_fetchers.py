"""
Tests for fetchers.py (static fetcher and router) and auth/sso.py.

``requests`` is never hit: the static fetcher is handed a fake session.
"""

import asyncio
import json
import os
import time

import pytest
import requests

from kbcrawler.auth.sso import NoSsoSessionProvider, StorageStateSessionProvider
from kbcrawler.errors import CredentialMissing, FetchError
from kbcrawler.fetchers import RequestsPageFetcher, RoutingPageFetcher
from kbcrawler.models import AuthContext, AuthType, FetchResult, LoginDetection, LoginMethod

LOGIN_PAGE = """
<form action="/session" method="post">
  <input type="hidden" name="csrf" value="fresh-token">
  <input name="user"><input name="pass" type="password">
  <button type="submit">Sign in</button>
</form>
"""


class FakeResponse:
    def __init__(self, text="", url="", status_code=200, headers=None):
        self.text = text
        self.url = url
        self.status_code = status_code
        self.headers = headers or {"Content-Type": "text/html"}


class FakeSession:
    def __init__(self, pages=None, error=None):
        self.pages = pages or {}
        self.error = error
        self.headers = {}
        self.cookies = requests.cookies.RequestsCookieJar()
        self.auth = None
        self.requests = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def get(self, url, timeout=None):
        self.requests.append(("GET", url, None))
        if self.error:
            raise self.error
        status, text = self.pages.get(url, (200, "<p>content</p>"))
        return FakeResponse(text, url, status)

    def post(self, url, data=None, timeout=None, allow_redirects=True):
        self.requests.append(("POST", url, data))
        return FakeResponse("", url, 302)


class StubbedFetcher(RequestsPageFetcher):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _session(self):
        return self.session


def fetch(fetcher, url, **kw):
    return asyncio.run(fetcher.fetch(url, **kw))


# ====================================================================
# Static fetcher
# ====================================================================

class TestRequestsPageFetcher:

    def test_plain_fetch(self):
        session = FakeSession()
        page = fetch(StubbedFetcher(session), "https://docs.example.org/")
        assert page.html == "<p>content</p>"
        assert page.status_code == 200
        assert session.auth is None

    def test_basic_auth(self):
        session = FakeSession()
        ctx = AuthContext(AuthType.BASIC, {"username": "u", "password": "p"})
        fetch(StubbedFetcher(session), "https://files.example.org/", auth=ctx)
        assert session.auth == ("u", "p")

    def test_header_and_cookie_auth(self):
        session = FakeSession()
        fetch(StubbedFetcher(session), "https://api.example.org/",
              auth=AuthContext(AuthType.HEADER, {"headers": {"X-Api-Key": "k"}}))
        assert session.headers["X-Api-Key"] == "k"

        session = FakeSession()
        fetch(StubbedFetcher(session), "https://app.example.org/",
              auth=AuthContext(AuthType.COOKIE, {"cookies": {"sid": "abc"}}))
        assert session.cookies.get("sid") == "abc"

    def test_form_login_posts_fresh_hidden_fields(self):
        login_url = "https://portal.example.org/login"
        session = FakeSession(pages={login_url: (200, LOGIN_PAGE)})
        detection = LoginDetection(
            is_login_page=True,
            method=LoginMethod.FORM,
            form_action="https://portal.example.org/session",
            username_field="user",
            password_field="pass",
            hidden_fields={"csrf": "stale-token", "lang": "en"},
        )
        ctx = AuthContext(AuthType.FORM, {"username": "me", "password": "pw"}, detection, login_url)
        fetch(StubbedFetcher(session), "https://portal.example.org/kb/1", auth=ctx)

        methods = [(m, u) for m, u, _ in session.requests]
        assert methods == [
            ("GET", login_url),
            ("POST", "https://portal.example.org/session"),
            ("GET", "https://portal.example.org/kb/1"),
        ]
        posted = session.requests[1][2]
        assert posted == {"csrf": "fresh-token", "lang": "en", "user": "me", "pass": "pw"}

    def test_server_error_is_fetch_error(self):
        session = FakeSession(pages={"https://docs.example.org/": (503, "busy")})
        with pytest.raises(FetchError):
            fetch(StubbedFetcher(session), "https://docs.example.org/")

    def test_client_error_is_returned(self):
        session = FakeSession(pages={"https://docs.example.org/": (401, "no")})
        assert fetch(StubbedFetcher(session), "https://docs.example.org/").status_code == 401

    def test_network_error_is_fetch_error(self):
        session = FakeSession(error=requests.ConnectionError("refused"))
        with pytest.raises(FetchError) as exc:
            fetch(StubbedFetcher(session), "https://docs.example.org/")
        assert exc.value.domain == "docs.example.org"


# ====================================================================
# Router
# ====================================================================

class Recording:
    def __init__(self, name):
        self.name = name
        self.closed = False

    async def fetch(self, url, *, wait_for_dynamic_content=False, auth=None):
        return FetchResult(html=self.name, final_url=url)

    async def close(self):
        self.closed = True


class TestRoutingPageFetcher:

    def test_routes_by_dynamic_flag(self):
        router = RoutingPageFetcher(Recording("static"), Recording("browser"))
        assert fetch(router, "https://a.example.org/").html == "static"
        assert fetch(router, "https://a.example.org/", wait_for_dynamic_content=True).html == "browser"

    def test_without_browser_falls_back_to_static(self):
        router = RoutingPageFetcher(Recording("static"))
        assert fetch(router, "https://a.example.org/", wait_for_dynamic_content=True).html == "static"

    def test_close_closes_both(self):
        static, browser = Recording("static"), Recording("browser")
        asyncio.run(RoutingPageFetcher(static, browser).close())
        assert static.closed and browser.closed


# ====================================================================
# Host SSO sessions
# ====================================================================

def write_state(path, cookies, age_hours=0.0):
    path.write_text(json.dumps({"cookies": cookies, "origins": []}))
    stamp = time.time() - age_hours * 3600
    os.utime(path, (stamp, stamp))


class TestStorageStateSessionProvider:

    def test_matching_cookie_is_active(self, tmp_path):
        state = tmp_path / "state.json"
        write_state(state, [{"name": "JSESSIONID", "value": "v", "domain": ".company.com", "expires": -1}])
        provider = StorageStateSessionProvider(str(state), Recording("x"))
        assert provider.has_active_sso_session("wiki.company.com")
        assert not provider.has_active_sso_session("wiki.other.com")

    def test_old_export_is_ignored(self, tmp_path):
        state = tmp_path / "state.json"
        write_state(state, [{"name": "sid", "value": "v", "domain": "wiki.company.com"}], age_hours=9)
        assert not StorageStateSessionProvider(str(state), Recording("x")).has_active_sso_session("wiki.company.com")

    def test_expired_cookie_is_ignored(self, tmp_path):
        state = tmp_path / "state.json"
        write_state(state, [{"name": "sid", "value": "v", "domain": "wiki.company.com", "expires": 1000}])
        assert not StorageStateSessionProvider(str(state), Recording("x")).has_active_sso_session("wiki.company.com")

    def test_missing_or_corrupt_file(self, tmp_path):
        assert not StorageStateSessionProvider(str(tmp_path / "nope.json"), None).has_active_sso_session("a.com")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        assert not StorageStateSessionProvider(str(bad), None).has_active_sso_session("a.com")

    def test_resume_replays_cookies(self, tmp_path):
        state = tmp_path / "state.json"
        write_state(state, [{"name": "sid", "value": "abc", "domain": "wiki.company.com"}])

        seen = {}

        class Capture:
            async def fetch(self, url, *, wait_for_dynamic_content=False, auth=None):
                seen["auth"] = auth
                return FetchResult(html="ok", final_url=url)

        provider = StorageStateSessionProvider(str(state), Capture())
        page = asyncio.run(provider.resume_sso_session("wiki.company.com", "https://wiki.company.com/x"))
        assert page.html == "ok"
        assert seen["auth"].auth_type is AuthType.SSO
        assert seen["auth"].payload == {"cookies": {"sid": "abc"}}

    def test_no_provider_raises(self):
        with pytest.raises(CredentialMissing):
            asyncio.run(NoSsoSessionProvider().resume_sso_session("wiki.company.com", "https://wiki.company.com/"))
