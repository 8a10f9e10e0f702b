"""
Login-Page Detector
===================
Classifies a fetched page as a login page (or not) from its markup alone.

Heuristics (ordered by specificity):
    1. Site rule     — a registered portal's selectors are present (confidence 1.0)
    2. SAML / OAuth  — SAMLRequest / RelayState / IdP markers, or OAuth
                       ``response_type`` + ``client_id`` parameters (0.9)
    3. Generic form  — a password input with a submission target, scored by
                       how login-like the field names are (0.6 to 0.95)

The highest confidence wins, ties go to the more specific heuristic.  A
SAML / OAuth marker sets the method even when a generic form also matched.

Pure function over markup: no network I/O, no browser.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from ..models import NOT_A_LOGIN_PAGE, LoginDetection, LoginMethod, SiteRule
from ..utils import normalize_host
from .site_rules import SiteRuleRegistry

logger = logging.getLogger(__name__)

try:
    import lxml  # noqa: F401
    _BS_PARSER = "lxml"
except ImportError:
    _BS_PARSER = "html.parser"


# ---------------------------------------------------------------------------
# Marker banks
# ---------------------------------------------------------------------------

_USERNAME_TOKENS = ("user", "login", "email", "mail", "account", "logon", "loginfmt", "j_username", "userid")
_PASSWORD_TOKENS = ("pass", "pwd", "passwd", "j_password", "secret")
_LOGIN_TEXT = ("log in", "login", "sign in", "signin", "log on", "logon", "authenticate")

_SAML_FIELDS = ("samlrequest", "samlresponse", "relaystate")

_IDP_URL_MARKERS: List[str] = [
    '/saml2/idp/', '/saml/idp/', '/idp/sso',
    '/saml2/sso', '/saml/sso',
    'login.microsoftonline.com',
    '/adfs/ls',
    '/nidp/', '/oamsso/',
]

_TWO_FACTOR_TEXT: List[str] = [
    'verification code',
    'one-time password',
    'one time password',
    'one-time code',
    'authenticator app',
    'two-factor',
    'two factor',
    '2-step verification',
    'multi-factor',
    'security code',
    'enter the code',
]

_TWO_FACTOR_FIELD = re.compile(r'(^|[_\-])(otp|totp|mfa|2fa|passcode|otc)([_\-]|$)', re.I)


# ---------------------------------------------------------------------------
# Heuristic plumbing
# ---------------------------------------------------------------------------

@dataclass
class PageContext:
    """Parsed page handed to every heuristic."""
    soup: BeautifulSoup
    url: str
    host: str
    site_rule: Optional[SiteRule]


@dataclass(frozen=True)
class Heuristic:
    name: str
    specificity: int
    fn: Callable[[PageContext], Optional[LoginDetection]]


def _selector_for(tag) -> Optional[str]:
    if tag is None:
        return None
    if tag.get("name"):
        return f'{tag.name}[name="{tag["name"]}"]'
    if tag.get("id"):
        return f'#{tag["id"]}'
    if tag.get("type"):
        return f'{tag.name}[type="{tag["type"]}"]'
    return tag.name


def _hidden_fields(scope) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    if scope is None:
        return fields
    for inp in scope.find_all("input", attrs={"type": re.compile("^hidden$", re.I)}):
        name = inp.get("name")
        if name:
            fields[name] = inp.get("value", "")
    return fields


def _form_action(form, url: str) -> Optional[str]:
    if form is None:
        return None
    return urljoin(url, form.get("action") or url)


def _submit_in(scope):
    if scope is None:
        return None
    return (
        scope.select_one('button[type="submit"]')
        or scope.select_one('input[type="submit"]')
        or scope.select_one('input[type="image"]')
        or scope.find("button", attrs={"type": None})
    )


def _first(soup: BeautifulSoup, selectors) -> tuple:
    for sel in selectors:
        try:
            tag = soup.select_one(sel)
        except ValueError:
            logger.debug(f"[DETECT] Unsupported selector skipped: {sel}")
            continue
        if tag is not None:
            return sel, tag
    return None, None


def _attr_text(tag) -> str:
    if tag is None:
        return ""
    return " ".join(
        str(tag.get(a, "")) for a in ("name", "id", "autocomplete", "placeholder", "aria-label")
    ).lower()


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def site_rule_heuristic(ctx: PageContext) -> Optional[LoginDetection]:
    """Known portal selectors present in the markup."""
    rule = ctx.site_rule
    if rule is None:
        return None
    pwd_sel, pwd = _first(ctx.soup, rule.password)
    if pwd is None:
        return None
    user_sel, user = _first(ctx.soup, rule.username)
    submit_sel, _ = _first(ctx.soup, rule.submit)

    form = ctx.soup.select_one(rule.form) if rule.form else None
    if form is None:
        form = pwd.find_parent("form")

    return LoginDetection(
        is_login_page=True,
        method=LoginMethod.FORM,
        username_selector=user_sel,
        password_selector=pwd_sel,
        submit_selector=submit_sel,
        confidence=1.0,
        form_action=_form_action(form, ctx.url),
        username_field=user.get("name") if user is not None else None,
        password_field=pwd.get("name"),
        hidden_fields=_hidden_fields(form),
        matched_rule=rule.name,
    )


def generic_form_heuristic(ctx: PageContext) -> Optional[LoginDetection]:
    """Password input plus a submission target."""
    pwd = ctx.soup.find("input", attrs={"type": re.compile("^password$", re.I)})
    if pwd is None:
        return None
    form = pwd.find_parent("form")
    scope = form if form is not None else ctx.soup
    submit = _submit_in(scope)
    if form is None and submit is None:
        return None

    # Username candidate: first visible text-like input in the same scope
    candidates = [
        inp for inp in scope.find_all("input")
        if (inp.get("type") or "text").lower() in ("text", "email", "tel")
    ]
    user = next(
        (c for c in candidates if any(t in _attr_text(c) for t in _USERNAME_TOKENS)),
        candidates[0] if candidates else None,
    )

    score = 0.6
    if user is not None and any(t in _attr_text(user) for t in _USERNAME_TOKENS):
        score += 0.15
    if any(t in _attr_text(pwd) for t in _PASSWORD_TOKENS):
        score += 0.1
    action = (form.get("action") or "").lower() if form is not None else ""
    label = submit.get_text(" ", strip=True).lower() if submit is not None else ""
    label += " " + (submit.get("value", "") if submit is not None else "").lower()
    if any(t in action or t in label for t in _LOGIN_TEXT):
        score += 0.1

    return LoginDetection(
        is_login_page=True,
        method=LoginMethod.FORM,
        username_selector=_selector_for(user),
        password_selector=_selector_for(pwd),
        submit_selector=_selector_for(submit),
        confidence=round(min(score, 0.95), 2),
        form_action=_form_action(form, ctx.url),
        username_field=user.get("name") if user is not None else None,
        password_field=pwd.get("name"),
        hidden_fields=_hidden_fields(form),
    )


def _candidate_urls(ctx: PageContext) -> List[str]:
    """Final URL, form actions and meta-refresh targets. Plain <a> links are ignored."""
    urls = [ctx.url]
    for form in ctx.soup.find_all("form"):
        if form.get("action"):
            urls.append(urljoin(ctx.url, form["action"]))
    for meta in ctx.soup.find_all("meta", attrs={"http-equiv": re.compile("^refresh$", re.I)}):
        content = meta.get("content", "")
        m = re.search(r'url\s*=\s*[\'"]?([^\'"]+)', content, re.I)
        if m:
            urls.append(urljoin(ctx.url, m.group(1).strip()))
    return urls


def saml_oauth_heuristic(ctx: PageContext) -> Optional[LoginDetection]:
    """SAML / OAuth redirect markers in the document or its final URL."""
    method: Optional[LoginMethod] = None
    carrier = None

    for inp in ctx.soup.find_all("input"):
        if (inp.get("name") or "").lower() in _SAML_FIELDS:
            method, carrier = LoginMethod.SAML, inp.find_parent("form")
            break

    if method is None:
        for candidate in _candidate_urls(ctx):
            parsed = urlparse(candidate)
            params = {k.lower() for k in parse_qs(parsed.query, keep_blank_values=True)}
            if params & {"samlrequest", "samlresponse"}:
                method = LoginMethod.SAML
                break
            if {"response_type", "client_id"} <= params:
                method = LoginMethod.OAUTH
                break

    if method is None:
        lowered = ctx.url.lower()
        if any(marker in lowered for marker in _IDP_URL_MARKERS):
            method = LoginMethod.SAML

    if method is None:
        return None
    return LoginDetection(
        is_login_page=True,
        method=method,
        confidence=0.9,
        form_action=_form_action(carrier, ctx.url),
        hidden_fields=_hidden_fields(carrier),
    )


DEFAULT_HEURISTICS: List[Heuristic] = [
    Heuristic("site_rule", 3, site_rule_heuristic),
    Heuristic("saml_oauth", 2, saml_oauth_heuristic),
    Heuristic("generic_form", 1, generic_form_heuristic),
]


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class LoginPageDetector:
    """Runs the heuristic pipeline over one page.

    Usage::

        detector = LoginPageDetector()
        detection = detector.detect(html, "https://me.sap.com/home")
        if detection.is_login_page:
            ...
    """

    def __init__(
        self,
        site_rules: Optional[SiteRuleRegistry] = None,
        heuristics: Optional[List[Heuristic]] = None,
    ):
        self.site_rules = site_rules or SiteRuleRegistry.with_builtins()
        self.heuristics = list(heuristics) if heuristics is not None else list(DEFAULT_HEURISTICS)

    def _parse(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html or "", _BS_PARSER)

    def detect(self, html: str, url: str, *, site_rule: Optional[SiteRule] = None) -> LoginDetection:
        """Classify *html* fetched from *url*.

        Args:
            html:      Page markup.
            url:       Final URL of the page (after redirects).
            site_rule: Rule from the domain classifier; falls back to a
                       registry match on the host.

        Returns:
            The winning ``LoginDetection`` or ``NOT_A_LOGIN_PAGE``.
        """
        host = normalize_host(url) or ""
        ctx = PageContext(
            soup=self._parse(html),
            url=url,
            host=host,
            site_rule=site_rule or self.site_rules.match(host),
        )

        hits = []
        for h in self.heuristics:
            result = h.fn(ctx)
            if result is not None and result.is_login_page:
                hits.append((result.confidence, h.specificity, h.name, result))

        if not hits:
            logger.debug(f"[DETECT] {url[:80]} -> not a login page")
            return NOT_A_LOGIN_PAGE

        hits.sort(key=lambda t: (t[0], t[1]), reverse=True)
        confidence, _, name, winner = hits[0]
        winner = replace(winner, heuristic=name)

        # Protocol markers decide the method even when a plain form scored higher
        protocol = next((r for _, _, n, r in hits if n == "saml_oauth"), None)
        if protocol is not None and name == "generic_form":
            winner = replace(winner, method=protocol.method)

        logger.info(
            f"[DETECT] {url[:80]} -> login page ({winner.method.value}, "
            f"{name}, confidence {confidence:.2f})"
        )
        return winner

    def detect_two_factor(self, html: str, url: str = "") -> bool:
        """True if the page is asking for a second factor."""
        soup = self._parse(html)
        code_inputs = 0
        for inp in soup.find_all("input"):
            if (inp.get("autocomplete") or "").lower() == "one-time-code":
                return True
            if _TWO_FACTOR_FIELD.search(inp.get("name") or "") or _TWO_FACTOR_FIELD.search(inp.get("id") or ""):
                return True
            if (inp.get("type") or "text").lower() in ("text", "number", "tel", "password"):
                code_inputs += 1
        # Keyword hits count only on pages with a code input
        if not code_inputs:
            return False
        text = soup.get_text(" ", strip=True).lower()
        if any(phrase in text for phrase in _TWO_FACTOR_TEXT):
            logger.info(f"[DETECT] Two-factor prompt on {url[:80]}")
            return True
        return False
