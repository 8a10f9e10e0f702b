"""
Data Model
==========
Records shared by every component of the scraping core.

Enumerations are ``str``-valued so records serialise straight to JSON.
Immutable records (``DomainPattern``, ``ScrapeResult``, ``ContentSnapshot``)
are frozen dataclasses; records that components update in place
(``Credential``, ``ScrapeJob``, ``JobRun``) are plain dataclasses whose
owners serialise access.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Regime(str, Enum):
    """Expected authentication mechanism for a URL."""
    INTERNAL = "internal"
    EXTERNAL_CREDENTIAL = "external_credential"
    PUBLIC = "public"


class AuthType(str, Enum):
    BASIC = "basic"
    FORM = "form"
    COOKIE = "cookie"
    HEADER = "header"
    SSO = "sso"


class LoginMethod(str, Enum):
    FORM = "form"
    SAML = "saml"
    OAUTH = "oauth"
    UNKNOWN = "unknown"


class ContentClassification(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CREDENTIAL_BASED = "credential_based"


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class ErrorKind(str, Enum):
    INVALID_URL = "invalid_url"
    FETCH_ERROR = "fetch_error"
    DECRYPTION_ERROR = "decryption_error"
    CREDENTIAL_MISSING = "credential_missing"
    LOGIN_LOOP = "login_loop_detected"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SiteRule:
    """Site-specific login selectors (SAP, Salesforce, ...).

    Selectors are tried in order; the first one present in the markup wins.
    """
    name: str
    domains: Tuple[str, ...]
    username: Tuple[str, ...] = ()
    password: Tuple[str, ...] = ()
    submit: Tuple[str, ...] = ()
    form: str = ""


@dataclass(frozen=True)
class DomainPattern:
    """One classification rule.

    ``pattern`` is an exact host (``me.sap.com``), a wildcard suffix
    (``*.company.com``) or a TLD family (``*.corp.*``, ``*.internal``).
    """
    pattern: str
    regime: Regime
    login_hints: Optional[SiteRule] = None


@dataclass(frozen=True)
class Classification:
    regime: Regime
    matched_pattern: Optional[DomainPattern] = None
    host: str = ""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncryptedPayload:
    """AES-GCM output split into its parts (all base64 text)."""
    ciphertext: str = field(repr=False)
    iv: str = field(repr=False)
    tag: str = field(repr=False)


@dataclass
class Credential:
    tenant_id: str
    domain_key: str
    auth_type: AuthType
    encrypted_payload: EncryptedPayload = field(repr=False)
    id: str = field(default_factory=new_id)
    name: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    consecutive_failures: int = 0
    failure_threshold: int = 3

    @property
    def is_stale(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    @property
    def key(self) -> Tuple[str, str, AuthType]:
        return (self.tenant_id, self.domain_key, self.auth_type)


# ---------------------------------------------------------------------------
# Detection / fetching
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoginDetection:
    """Outcome of one login-page analysis. Never persisted."""
    is_login_page: bool = False
    method: LoginMethod = LoginMethod.UNKNOWN
    username_selector: Optional[str] = None
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None
    confidence: float = 0.0
    form_action: Optional[str] = None
    username_field: Optional[str] = None
    password_field: Optional[str] = None
    hidden_fields: Dict[str, str] = field(default_factory=dict)
    matched_rule: Optional[str] = None
    heuristic: Optional[str] = None


NOT_A_LOGIN_PAGE = LoginDetection()


@dataclass(frozen=True)
class FetchResult:
    html: str
    final_url: str
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthContext:
    """Everything a fetcher needs to submit one authentication attempt."""
    auth_type: AuthType
    payload: Dict[str, Any] = field(repr=False, default_factory=dict)
    detection: LoginDetection = NOT_A_LOGIN_PAGE
    login_url: str = ""


# ---------------------------------------------------------------------------
# Jobs and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScrapeError:
    kind: ErrorKind
    message: str
    suggestion: str = ""
    domain: str = ""
    auth_type: str = ""


@dataclass(frozen=True)
class ScrapeResult:
    url: str
    regime: Regime
    content_classification: ContentClassification
    auth_method_used: Optional[AuthType] = None
    content_hash: str = ""
    change_percentage: Optional[float] = None
    is_major_change: bool = False
    storage_ref: Optional[str] = None
    error: Optional[ScrapeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "regime": self.regime.value,
            "content_classification": self.content_classification.value,
            "auth_method_used": self.auth_method_used.value if self.auth_method_used else None,
            "content_hash": self.content_hash,
            "change_percentage": self.change_percentage,
            "is_major_change": self.is_major_change,
            "storage_ref": self.storage_ref,
            "error": None if self.error is None else {
                "kind": self.error.kind.value,
                "message": self.error.message,
                "suggestion": self.error.suggestion,
            },
        }


@dataclass
class ScrapeJob:
    tenant_id: str
    target_urls: Set[str]
    schedule: str
    id: str = field(default_factory=new_id)
    name: str = ""
    concurrency_limit: int = 2
    is_active: bool = True
    wait_for_dynamic_content: bool = False
    next_run: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ScrapeJob":
        return cls(
            id=data.get("id") or new_id(),
            tenant_id=data["tenant_id"],
            name=data.get("name", ""),
            target_urls=set(data.get("target_urls", [])),
            schedule=data["schedule"],
            concurrency_limit=int(data.get("concurrency_limit", 2)),
            is_active=bool(data.get("is_active", True)),
            wait_for_dynamic_content=bool(data.get("wait_for_dynamic_content", False)),
        )


@dataclass
class JobRun:
    job_id: str
    tenant_id: str
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    per_url_results: List[ScrapeResult] = field(default_factory=list)
    cancelled: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def finish(self, results: List[ScrapeResult], *, cancelled: bool = False) -> None:
        """Seal the run. A finished run is never modified again."""
        if self.finished_at is not None:
            raise RuntimeError(f"JobRun {self.id} is already finished")
        self.per_url_results = list(results)
        self.cancelled = cancelled
        self.outcome = derive_outcome(self.per_url_results, cancelled=cancelled)
        self.finished_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "tenant_id": self.tenant_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "cancelled": self.cancelled,
            "metadata": dict(self.metadata),
            "per_url_results": [r.to_dict() for r in self.per_url_results],
        }


def derive_outcome(results: List[ScrapeResult], *, cancelled: bool = False) -> RunOutcome:
    """``success`` iff every result is error-free; cancelled runs always fail."""
    if cancelled or not results:
        return RunOutcome.FAILURE
    failed = sum(1 for r in results if not r.ok)
    if failed == 0:
        return RunOutcome.SUCCESS
    if failed == len(results):
        return RunOutcome.FAILURE
    return RunOutcome.PARTIAL_FAILURE


@dataclass(frozen=True)
class ContentSnapshot:
    url: str
    tenant_id: str
    content_hash: str
    timestamp: datetime = field(default_factory=utcnow)
    content_ref: str = ""
