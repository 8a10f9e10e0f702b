"""
Error Taxonomy
==============
Every failure the scraping core can surface, plus the actionable
suggestion shown to the operator for each kind.

Per-URL failures derive from ``ScrapeFailure``.  They are caught by the
scheduler, converted with ``to_record()`` and stored on that URL's
``ScrapeResult.error``; they never abort sibling URLs.

Everything else (vault setup, bad cron expressions, illegal state-machine
moves) derives from ``KBCrawlerError`` directly and propagates normally.
"""

from __future__ import annotations

from typing import Optional

from .models import ErrorKind, ScrapeError


class KBCrawlerError(Exception):
    """Base class for all kbcrawler errors."""


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

def suggestion_for(
    kind: ErrorKind,
    domain: str = "",
    auth_type: str = "",
) -> str:
    """Build the operator-facing hint for a failure kind."""
    where = domain or "this site"
    if kind is ErrorKind.INVALID_URL:
        return "Check the URL: it must be an absolute http(s) address."
    if kind is ErrorKind.FETCH_ERROR:
        return (
            f"{where} could not be reached after several retries. "
            f"Check that the site is up and reachable from the scraper host."
        )
    if kind is ErrorKind.DECRYPTION_ERROR:
        return (
            f"The stored credential for {where} is unreadable. "
            f"Re-enter it in the credentials manager."
        )
    if kind is ErrorKind.CREDENTIAL_MISSING:
        if auth_type == "sso":
            return (
                f"{where} uses single sign-on. Sign in to {where} in the host "
                f"application, or store session cookies for it using auth type 'cookie'."
            )
        inferred = auth_type or "form"
        return (
            f"Provide credentials for {where} using auth type '{inferred}' "
            f"(inferred from its login page)."
        )
    if kind is ErrorKind.LOGIN_LOOP:
        return (
            f"The login page for {where} kept coming back after sign-in. "
            f"Verify the stored username and password and re-enter them."
        )
    if kind is ErrorKind.TWO_FACTOR_REQUIRED:
        return (
            f"{where} asks for a second factor (one-time code). Automatic "
            f"login is not possible; export an authenticated session as cookies instead."
        )
    if kind is ErrorKind.CANCELLED:
        return "The job run was cancelled before this URL was processed."
    return ""


# ---------------------------------------------------------------------------
# Per-URL failures
# ---------------------------------------------------------------------------

class ScrapeFailure(KBCrawlerError):
    """A failure scoped to a single URL inside a job run."""

    kind: ErrorKind = ErrorKind.FETCH_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        domain: str = "",
        auth_type: str = "",
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.auth_type = auth_type
        self.suggestion = (
            suggestion if suggestion is not None
            else suggestion_for(self.kind, domain, auth_type)
        )

    def to_record(self) -> ScrapeError:
        return ScrapeError(
            kind=self.kind,
            message=self.message,
            suggestion=self.suggestion,
            domain=self.domain,
            auth_type=self.auth_type,
        )


class InvalidURL(ScrapeFailure):
    kind = ErrorKind.INVALID_URL


class FetchError(ScrapeFailure):
    """Network failure or timeout; retried with backoff before surfacing."""
    kind = ErrorKind.FETCH_ERROR
    retryable = True


class DecryptionError(ScrapeFailure):
    """Stored ciphertext could not be authenticated. Never retried."""
    kind = ErrorKind.DECRYPTION_ERROR


class CredentialMissing(ScrapeFailure):
    kind = ErrorKind.CREDENTIAL_MISSING


class LoginLoopDetected(ScrapeFailure):
    kind = ErrorKind.LOGIN_LOOP


class TwoFactorRequired(ScrapeFailure):
    kind = ErrorKind.TWO_FACTOR_REQUIRED


class Cancelled(ScrapeFailure):
    kind = ErrorKind.CANCELLED


# ---------------------------------------------------------------------------
# Component errors
# ---------------------------------------------------------------------------

class SaveError(KBCrawlerError):
    """Content persistence failed. Logged only; the scrape still counts."""


class CredentialNotFound(KBCrawlerError):
    """No usable (non-stale) credential for the requested domain."""


class VaultConfigurationError(KBCrawlerError):
    """Master key missing or malformed; the vault refuses to start."""


class InvalidSchedule(KBCrawlerError):
    pass


class JobNotFound(KBCrawlerError):
    pass


class IllegalTransition(KBCrawlerError):
    """The authentication state machine was asked for a move it does not allow."""
