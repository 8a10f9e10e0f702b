"""
Tests for auth/login_detector.py.

Covers:
  1. Site-rule detection (SAP) with full confidence
  2. Generic form heuristic and its confidence range
  3. SAML / OAuth markers, with and without a form
  4. Non-login pages and two-factor prompts
"""

import pytest

from kbcrawler.auth.login_detector import LoginPageDetector
from kbcrawler.auth.site_rules import SAP_RULE, SiteRuleRegistry
from kbcrawler.models import LoginMethod, SiteRule

SAP_LOGIN = """
<html><head><title>Log On</title></head><body>
<form id="logonForm" action="/saml2/idp/sso/accounts.sap.com" method="post">
  <input type="hidden" name="xsrfProtection" value="tok-123">
  <input id="j_username" name="j_username" type="text">
  <input id="j_password" name="j_password" type="password">
  <button id="logOnFormSubmit" type="submit">Continue</button>
</form>
</body></html>
"""

GENERIC_LOGIN = """
<html><body>
<form action="/session/login" method="post">
  <input type="hidden" name="csrf" value="abc">
  <input type="email" name="email" placeholder="Work email">
  <input type="password" name="pwd">
  <button type="submit">Sign in</button>
</form>
</body></html>
"""

ARTICLE = """
<html><head><title>Release notes</title></head><body>
<main><h1>Release 2024.3</h1><p>The new build ships faster indexing.</p>
<a href="/docs/setup">Setup guide</a></main>
</body></html>
"""


@pytest.fixture
def detector():
    return LoginPageDetector()


# ====================================================================
# 1. Site rules
# ====================================================================

class TestSiteRule:

    def test_sap_page_detected_with_full_confidence(self, detector):
        d = detector.detect(SAP_LOGIN, "https://accounts.sap.com/saml2/idp/sso")
        assert d.is_login_page
        assert d.method is LoginMethod.FORM
        assert d.confidence == 1.0
        assert d.matched_rule == "sap"
        assert d.username_selector == "#j_username"
        assert d.password_selector == "#j_password"
        assert d.submit_selector == "#logOnFormSubmit"

    def test_form_details_extracted(self, detector):
        d = detector.detect(SAP_LOGIN, "https://accounts.sap.com/saml2/idp/sso")
        assert d.username_field == "j_username"
        assert d.password_field == "j_password"
        assert d.hidden_fields == {"xsrfProtection": "tok-123"}
        assert d.form_action == "https://accounts.sap.com/saml2/idp/sso/accounts.sap.com"

    def test_explicit_rule_overrides_host_match(self, detector):
        d = detector.detect(SAP_LOGIN, "https://sso.example.org/login", site_rule=SAP_RULE)
        assert d.matched_rule == "sap"
        assert d.confidence == 1.0

    def test_registered_rule_is_used(self):
        registry = SiteRuleRegistry.with_builtins()
        registry.register(SiteRule(name="acme", domains=("acme.io",), username=("#u",), password=("#p",)))
        html = '<form><input id="u" name="login"><input id="p" name="secret" type="password"></form>'
        d = LoginPageDetector(registry).detect(html, "https://portal.acme.io/")
        assert d.matched_rule == "acme"
        assert d.heuristic == "site_rule"


# ====================================================================
# 2. Generic form
# ====================================================================

class TestGenericForm:

    def test_strong_signals_score_high(self, detector):
        d = detector.detect(GENERIC_LOGIN, "https://example.org/login")
        assert d.is_login_page
        assert d.method is LoginMethod.FORM
        assert d.heuristic == "generic_form"
        assert d.confidence == pytest.approx(0.95)
        assert d.username_field == "email"
        assert d.password_field == "pwd"
        assert d.username_selector == 'input[name="email"]'
        assert d.form_action == "https://example.org/session/login"
        assert d.hidden_fields == {"csrf": "abc"}

    def test_weak_signals_score_low(self, detector):
        html = '<form><input type="text" name="q1"><input type="password" name="x"><input type="submit" value="Go"></form>'
        d = detector.detect(html, "https://example.org/")
        assert d.is_login_page
        assert 0.6 <= d.confidence < 0.75

    def test_password_without_form_or_submit_is_not_login(self, detector):
        d = detector.detect('<div><input type="password"></div>', "https://example.org/")
        assert not d.is_login_page


# ====================================================================
# 3. SAML / OAuth
# ====================================================================

class TestProtocolMarkers:

    def test_saml_post_binding(self, detector):
        html = """
        <html><body onload="document.forms[0].submit()">
        <form method="post" action="https://idp.example.com/sso">
          <input type="hidden" name="SAMLRequest" value="PHNhbWw+">
          <input type="hidden" name="RelayState" value="xyz">
        </form></body></html>
        """
        d = detector.detect(html, "https://wiki.company.com/")
        assert d.method is LoginMethod.SAML
        assert d.confidence == pytest.approx(0.9)
        assert d.form_action == "https://idp.example.com/sso"
        assert d.hidden_fields["RelayState"] == "xyz"

    def test_oauth_in_final_url(self, detector):
        url = "https://login.example.com/authorize?response_type=code&client_id=abc&redirect_uri=x"
        d = detector.detect("<html><body>Redirecting...</body></html>", url)
        assert d.is_login_page
        assert d.method is LoginMethod.OAUTH

    def test_saml_in_meta_refresh(self, detector):
        html = '<meta http-equiv="refresh" content="0; url=https://idp.example.com/sso?SAMLRequest=abc">'
        d = detector.detect(html, "https://intranet.company.com/")
        assert d.method is LoginMethod.SAML

    def test_protocol_marker_sets_method_even_with_form(self, detector):
        url = "https://login.example.com/authorize?response_type=code&client_id=abc"
        d = detector.detect(GENERIC_LOGIN, url)
        assert d.method is LoginMethod.OAUTH
        assert d.password_field == "pwd"


# ====================================================================
# 4. Not a login page / two-factor
# ====================================================================

class TestNegativeAndTwoFactor:

    def test_article_is_not_login(self, detector):
        d = detector.detect(ARTICLE, "https://docs.example.org/release")
        assert not d.is_login_page
        assert d.method is LoginMethod.UNKNOWN
        assert d.confidence == 0.0

    def test_social_sign_in_link_is_not_login(self, detector):
        html = """
        <html><body><article><h1>Release notes</h1>
        <p>Version 4.2 ships faster exports and a new audit trail for admins.</p>
        <a href="https://accounts.google.com/o/oauth2/auth?response_type=code&client_id=abc">Sign in with Google</a>
        </article></body></html>
        """
        d = detector.detect(html, "https://docs.example.org/release")
        assert not d.is_login_page
        assert d.method is LoginMethod.UNKNOWN

    def test_empty_document(self, detector):
        assert not detector.detect("", "https://example.org/").is_login_page

    @pytest.mark.parametrize("html", [
        '<form><p>Enter the verification code from your authenticator app</p><input name="code"></form>',
        '<form><input autocomplete="one-time-code" name="c"></form>',
        '<form><input name="otp_code"></form>',
    ])
    def test_two_factor_prompts(self, detector, html):
        assert detector.detect_two_factor(html, "https://example.org/mfa")

    def test_article_about_mfa_is_not_a_prompt(self, detector):
        html = "<main><h1>Setting up two-factor authentication</h1><p>Use an authenticator app.</p></main>"
        assert not detector.detect_two_factor(html, "https://docs.example.org/mfa")

    def test_plain_article_has_no_two_factor(self, detector):
        assert not detector.detect_two_factor(ARTICLE)
