"""
Authentication Orchestrator
===========================
Drives one URL from first fetch to verified content through an explicit
state machine.

States::

    FETCHING → FETCHED → DETECTING ─┬─ (not a login page) ─────────────→ DONE
                                    └─ AUTHENTICATING → SUBMITTED → VERIFYING
                                           ↑                         │
                                           └──── still login ────────┤
                                                                     ├→ VERIFIED → DONE
                                                                     └→ FAILED

Every move goes through ``_transition()``; anything outside
``_TRANSITIONS`` raises ``IllegalTransition``.

Plans (regime × detected method):
    - ``SsoPlan``         — internal host behind SAML / OAuth: resume the
                            host application's SSO session, no credential lookup
    - ``CredentialPlan``  — external portal, or any plain login form: use
                            the Credential Vault
    - ``UnsupportedPlan`` — public host behind SAML / OAuth: nothing to
                            submit, reported as a missing credential

Bounds:
    - Fetches are retried with exponential backoff before ``FetchError``.
    - Login attempts per (tenant, domain) per job run are capped by
      ``max_login_attempts``; the cap is shared by all URLs of the run
      through one ``AttemptTracker``.
    - A two-factor prompt is terminal and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from ..errors import (
    CredentialMissing,
    CredentialNotFound,
    DecryptionError,
    FetchError,
    IllegalTransition,
    LoginLoopDetected,
    TwoFactorRequired,
)
from ..models import (
    AuthContext,
    AuthType,
    Classification,
    ContentClassification,
    Credential,
    FetchResult,
    LoginDetection,
    LoginMethod,
    Regime,
)
from ..utils import RetryHandler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class AuthState(str, Enum):
    FETCHING = "fetching"
    FETCHED = "fetched"
    DETECTING = "detecting"
    AUTHENTICATING = "authenticating"
    SUBMITTED = "submitted"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: Dict[AuthState, FrozenSet[AuthState]] = {
    AuthState.FETCHING: frozenset({AuthState.FETCHED, AuthState.FAILED}),
    AuthState.FETCHED: frozenset({AuthState.DETECTING, AuthState.FAILED}),
    AuthState.DETECTING: frozenset({AuthState.DONE, AuthState.AUTHENTICATING, AuthState.FAILED}),
    AuthState.AUTHENTICATING: frozenset({AuthState.SUBMITTED, AuthState.FAILED}),
    AuthState.SUBMITTED: frozenset({AuthState.VERIFYING, AuthState.FAILED}),
    AuthState.VERIFYING: frozenset({AuthState.VERIFIED, AuthState.AUTHENTICATING, AuthState.FAILED}),
    AuthState.VERIFIED: frozenset({AuthState.DONE}),
    AuthState.DONE: frozenset(),
    AuthState.FAILED: frozenset(),
}

_LOCKED_OUT_STATUS = (401, 403)


@dataclass
class _AuthRun:
    """Mutable state of one ``scrape()`` call."""
    url: str
    state: AuthState = AuthState.FETCHING
    history: List[AuthState] = field(default_factory=lambda: [AuthState.FETCHING])


def _transition(run: _AuthRun, to: AuthState) -> None:
    if to not in _TRANSITIONS[run.state]:
        raise IllegalTransition(f"{run.state.value} -> {to.value} is not allowed ({run.url})")
    logger.debug(f"[AUTH] {run.url[:60]}: {run.state.value} -> {to.value}")
    run.state = to
    run.history.append(to)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SsoPlan:
    domain: str


@dataclass(frozen=True)
class CredentialPlan:
    domain: str
    inferred_auth_type: AuthType


@dataclass(frozen=True)
class UnsupportedPlan:
    domain: str
    method: LoginMethod


AuthPlan = Union[SsoPlan, CredentialPlan, UnsupportedPlan]


def plan_for(classification: Classification, detection: LoginDetection) -> AuthPlan:
    """Pick the authentication path for a detected login page."""
    domain = classification.host
    if detection.method in (LoginMethod.SAML, LoginMethod.OAUTH):
        if classification.regime is Regime.INTERNAL:
            return SsoPlan(domain)
        if classification.regime is Regime.EXTERNAL_CREDENTIAL:
            return CredentialPlan(domain, AuthType.SSO)
        return UnsupportedPlan(domain, detection.method)
    inferred = AuthType.BASIC if detection.heuristic == "http_basic" else AuthType.FORM
    return CredentialPlan(domain, inferred)


# ---------------------------------------------------------------------------
# Attempt tracking
# ---------------------------------------------------------------------------

class AttemptTracker:
    """Consecutive login attempts per (tenant, domain), shared by one job run."""

    def __init__(self):
        self._attempts: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def begin(self, tenant_id: str, domain: str, limit: int) -> Optional[int]:
        """Reserve the next attempt; ``None`` once *limit* is used up."""
        async with self._lock:
            current = self._attempts.get((tenant_id, domain), 0)
            if current >= limit:
                return None
            self._attempts[(tenant_id, domain)] = current + 1
            return current + 1

    async def reset(self, tenant_id: str, domain: str) -> None:
        async with self._lock:
            self._attempts.pop((tenant_id, domain), None)

    def count(self, tenant_id: str, domain: str) -> int:
        return self._attempts.get((tenant_id, domain), 0)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthOutcome:
    content: str
    final_url: str
    regime: Regime
    content_classification: ContentClassification
    auth_method_used: Optional[AuthType] = None
    transitions: Tuple[AuthState, ...] = ()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AuthenticationOrchestrator:
    """Fetch, detect, authenticate and verify one URL at a time.

    Usage::

        orchestrator = AuthenticationOrchestrator(
            classifier, vault, detector, fetcher, session_provider, config,
        )
        outcome = await orchestrator.scrape("acme", "https://me.sap.com/home")
    """

    def __init__(self, classifier, vault, detector, fetcher, session_provider, config):
        """
        Args:
            classifier:       ``DomainClassifier``.
            vault:            ``CredentialVault``.
            detector:         ``LoginPageDetector``.
            fetcher:          ``PageFetcher``.
            session_provider: ``HostSessionProvider`` for internal SSO.
            config:           ``ScraperRunConfig``.
        """
        self.classifier = classifier
        self.vault = vault
        self.detector = detector
        self.fetcher = fetcher
        self.session_provider = session_provider
        self.config = config
        self.retry = RetryHandler(
            max_retries=config.max_fetch_retries,
            base_delay=config.retry_base_delay,
        )

    # ── Public API ────────────────────────────────────────────────

    async def scrape(
        self,
        tenant_id: str,
        url: str,
        *,
        attempt_tracker: Optional[AttemptTracker] = None,
        wait_for_dynamic_content: bool = False,
    ) -> AuthOutcome:
        """Return verified content for *url* or raise a ``ScrapeFailure``."""
        classification = self.classifier.classify(url)
        tracker = attempt_tracker or AttemptTracker()
        run = _AuthRun(url)
        try:
            return await self._drive(run, tenant_id, url, classification, tracker, wait_for_dynamic_content)
        except BaseException:
            if AuthState.FAILED in _TRANSITIONS[run.state]:
                _transition(run, AuthState.FAILED)
            raise

    # ── Flow ──────────────────────────────────────────────────────

    async def _drive(
        self,
        run: _AuthRun,
        tenant_id: str,
        url: str,
        classification: Classification,
        tracker: AttemptTracker,
        dynamic: bool,
    ) -> AuthOutcome:
        domain = classification.host
        site_rule = classification.matched_pattern.login_hints if classification.matched_pattern else None

        page = await self._fetch(url, dynamic)
        _transition(run, AuthState.FETCHED)

        _transition(run, AuthState.DETECTING)
        detection = self._detect(page, site_rule)
        if not detection.is_login_page:
            _transition(run, AuthState.DONE)
            return self._outcome(run, page, classification, ContentClassification.PUBLIC, None)

        plan = plan_for(classification, detection)
        logger.info(
            f"[AUTH] Login page on {domain} ({detection.method.value}, "
            f"regime {classification.regime.value}) -> {type(plan).__name__}"
        )

        if isinstance(plan, UnsupportedPlan):
            raise CredentialMissing(
                f"{domain} redirects to {plan.method.value.upper()} single sign-on "
                f"and is not a known internal host",
                domain=domain,
                auth_type=AuthType.SSO.value,
            )

        credential: Optional[Credential] = None
        payload: dict = {}
        if isinstance(plan, SsoPlan):
            if not self.session_provider.has_active_sso_session(domain):
                raise CredentialMissing(
                    f"No active single sign-on session for {domain}",
                    domain=domain,
                    auth_type=AuthType.SSO.value,
                )
        else:
            credential, payload = await self._resolve_credential(tenant_id, plan)

        login_url = page.final_url
        while True:
            attempt = await tracker.begin(tenant_id, domain, self.config.max_login_attempts)
            if attempt is None:
                raise LoginLoopDetected(
                    f"Login attempts for {domain} exhausted in this run "
                    f"({self.config.max_login_attempts} max)",
                    domain=domain,
                    auth_type=credential.auth_type.value if credential else AuthType.SSO.value,
                )
            _transition(run, AuthState.AUTHENTICATING)

            if isinstance(plan, SsoPlan):
                page = await self._timed(
                    lambda: self.session_provider.resume_sso_session(domain, url),
                    label=f"sso {domain}",
                    what=f"resuming the single sign-on session for {url}",
                )
            else:
                ctx = AuthContext(
                    auth_type=credential.auth_type,
                    payload=payload,
                    detection=detection,
                    login_url=login_url,
                )
                page = await self._fetch(url, dynamic, auth=ctx)
            _transition(run, AuthState.SUBMITTED)
            logger.info(f"[AUTH] Attempt {attempt} submitted for {domain}")

            _transition(run, AuthState.VERIFYING)
            recheck = self._detect(page, site_rule)
            # A returned password form is a rejected login, code prompt or not
            if recheck.password_selector is None and self.detector.detect_two_factor(page.html, page.final_url):
                raise TwoFactorRequired(
                    f"{domain} requires a second authentication factor",
                    domain=domain,
                    auth_type=credential.auth_type.value if credential else AuthType.SSO.value,
                )

            locked_out = recheck.is_login_page or page.status_code in _LOCKED_OUT_STATUS
            if not locked_out:
                _transition(run, AuthState.VERIFIED)
                await tracker.reset(tenant_id, domain)
                if credential is not None:
                    await self._record(credential, success=True)
                    used, kind = credential.auth_type, ContentClassification.CREDENTIAL_BASED
                else:
                    used, kind = AuthType.SSO, ContentClassification.INTERNAL
                _transition(run, AuthState.DONE)
                logger.info(f"[AUTH] Verified {domain} via {used.value}")
                return self._outcome(run, page, classification, kind, used)

            logger.warning(f"[AUTH] Still on a login page for {domain} after attempt {attempt}")
            if credential is not None:
                await self._record(credential, success=False)
            if attempt >= self.config.max_login_attempts:
                raise LoginLoopDetected(
                    f"Login page for {domain} returned after {attempt} attempts",
                    domain=domain,
                    auth_type=credential.auth_type.value if credential else AuthType.SSO.value,
                )
            if recheck.is_login_page:
                detection = recheck
                login_url = page.final_url

    # ── Steps ─────────────────────────────────────────────────────

    async def _fetch(self, url: str, dynamic: bool, auth: Optional[AuthContext] = None) -> FetchResult:
        return await self._timed(
            lambda: self.fetcher.fetch(url, wait_for_dynamic_content=dynamic, auth=auth),
            label=url[:60],
            what=f"fetching {url}",
        )

    async def _timed(self, call, *, label: str, what: str) -> FetchResult:
        """Retry *call* with each attempt bounded by ``fetch_timeout_seconds``."""
        timeout = self.config.fetch_timeout_seconds

        async def _once() -> FetchResult:
            return await asyncio.wait_for(call(), timeout=timeout)

        try:
            return await self.retry.run(_once, retry_on=(FetchError, asyncio.TimeoutError), label=label)
        except asyncio.TimeoutError as exc:
            raise FetchError(f"Timed out after {timeout}s {what}") from exc

    def _detect(self, page: FetchResult, site_rule) -> LoginDetection:
        detection = self.detector.detect(page.html, page.final_url, site_rule=site_rule)
        if detection.is_login_page:
            return detection
        challenge = {k.lower(): v for k, v in page.headers.items()}.get("www-authenticate", "")
        if page.status_code == 401 and challenge.lower().startswith("basic"):
            return LoginDetection(
                is_login_page=True,
                method=LoginMethod.UNKNOWN,
                confidence=1.0,
                heuristic="http_basic",
            )
        return detection

    async def _resolve_credential(self, tenant_id: str, plan: CredentialPlan) -> Tuple[Credential, dict]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.vault.resolve, tenant_id, plan.domain),
                timeout=self.config.decrypt_timeout_seconds,
            )
        except CredentialNotFound:
            raise CredentialMissing(
                f"No stored credential for {plan.domain}",
                domain=plan.domain,
                auth_type=plan.inferred_auth_type.value,
            ) from None
        except asyncio.TimeoutError:
            raise DecryptionError(
                f"Credential vault did not answer within {self.config.decrypt_timeout_seconds}s",
                domain=plan.domain,
            ) from None

    async def _record(self, credential: Credential, *, success: bool) -> None:
        await asyncio.to_thread(self.vault.record_outcome, credential.id, success)

    @staticmethod
    def _outcome(
        run: _AuthRun,
        page: FetchResult,
        classification: Classification,
        kind: ContentClassification,
        used: Optional[AuthType],
    ) -> AuthOutcome:
        return AuthOutcome(
            content=page.html,
            final_url=page.final_url,
            regime=classification.regime,
            content_classification=kind,
            auth_method_used=used,
            transitions=tuple(run.history),
        )
