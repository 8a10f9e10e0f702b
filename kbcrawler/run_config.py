"""
Unified Run Configuration
=========================
Single source of truth for ALL scraper defaults and runtime limits.

Every component (orchestrator, vault, scheduler, change detector, saver)
receives its limits from this object through its constructor.  Environment
variables and CLI flags populate it; nothing reads the environment later.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "max_workers": 6,                  # global worker pool across all jobs
    "fetch_timeout_seconds": 20,
    "max_fetch_retries": 2,            # retries after the first attempt
    "retry_base_delay": 1.0,           # seconds, doubled per retry
    "max_login_attempts": 2,           # per (tenant, domain) per run
    "credential_failure_threshold": 3,
    "major_change_threshold": 50.0,    # percent
    "decrypt_timeout_seconds": 5,
    "poll_interval_seconds": 30,
    "sso_max_age_hours": 8,
    "content_root": "scraped",
    "user_agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
}

_ENV_PREFIX = "KB_"


@dataclass
class ScraperRunConfig:
    """
    Unified configuration consumed by every scraper subsystem.

    Populate via:
      - ``ScraperRunConfig()``                 → all defaults
      - ``ScraperRunConfig(max_workers=2)``     → override one value
      - ``ScraperRunConfig.from_env()``         → from ``KB_*`` variables
      - ``ScraperRunConfig.from_cli_args(ns)``  → overlay argparse values
    """

    # ---- Concurrency ----
    max_workers: int = _DEFAULTS["max_workers"]
    poll_interval_seconds: int = _DEFAULTS["poll_interval_seconds"]

    # ---- Fetching ----
    fetch_timeout_seconds: int = _DEFAULTS["fetch_timeout_seconds"]
    max_fetch_retries: int = _DEFAULTS["max_fetch_retries"]
    retry_base_delay: float = _DEFAULTS["retry_base_delay"]
    user_agent: str = _DEFAULTS["user_agent"]

    # ---- Authentication ----
    max_login_attempts: int = _DEFAULTS["max_login_attempts"]
    credential_failure_threshold: int = _DEFAULTS["credential_failure_threshold"]
    decrypt_timeout_seconds: int = _DEFAULTS["decrypt_timeout_seconds"]
    master_key: Optional[str] = field(default=None, repr=False)
    vault_state_path: Optional[str] = None
    sso_state_path: Optional[str] = None
    sso_max_age_hours: float = _DEFAULTS["sso_max_age_hours"]

    # ---- Classification ----
    domain_patterns_file: Optional[str] = None

    # ---- Change tracking / storage ----
    major_change_threshold: float = _DEFAULTS["major_change_threshold"]
    content_root: str = _DEFAULTS["content_root"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ=None) -> "ScraperRunConfig":
        """Build config from ``KB_*`` environment variables."""
        env = os.environ if environ is None else environ

        def _get(name: str, cast, default):
            raw = env.get(_ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError:
                logger.warning(f"[CONFIG] Ignoring invalid {_ENV_PREFIX}{name.upper()}={raw!r}")
                return default

        return cls(
            max_workers=_get("max_workers", int, _DEFAULTS["max_workers"]),
            poll_interval_seconds=_get("poll_interval_seconds", int, _DEFAULTS["poll_interval_seconds"]),
            fetch_timeout_seconds=_get("fetch_timeout_seconds", int, _DEFAULTS["fetch_timeout_seconds"]),
            max_fetch_retries=_get("max_fetch_retries", int, _DEFAULTS["max_fetch_retries"]),
            retry_base_delay=_get("retry_base_delay", float, _DEFAULTS["retry_base_delay"]),
            user_agent=_get("user_agent", str, _DEFAULTS["user_agent"]),
            max_login_attempts=_get("max_login_attempts", int, _DEFAULTS["max_login_attempts"]),
            credential_failure_threshold=_get(
                "credential_failure_threshold", int, _DEFAULTS["credential_failure_threshold"]
            ),
            decrypt_timeout_seconds=_get("decrypt_timeout_seconds", int, _DEFAULTS["decrypt_timeout_seconds"]),
            master_key=env.get("KB_CREDENTIAL_MASTER_KEY") or None,
            vault_state_path=_get("vault_state_path", str, None),
            sso_state_path=_get("sso_state_path", str, None),
            sso_max_age_hours=_get("sso_max_age_hours", float, _DEFAULTS["sso_max_age_hours"]),
            domain_patterns_file=_get("domain_patterns_file", str, None),
            major_change_threshold=_get("major_change_threshold", float, _DEFAULTS["major_change_threshold"]),
            content_root=_get("content_root", str, _DEFAULTS["content_root"]),
        )

    @classmethod
    def from_cli_args(cls, args, base: Optional["ScraperRunConfig"] = None) -> "ScraperRunConfig":
        """Overlay argparse values (``__main__.py``) on *base* (default: env)."""
        cfg = base or cls.from_env()
        overrides = {
            "max_workers": getattr(args, "workers", None),
            "fetch_timeout_seconds": getattr(args, "timeout", None),
            "max_fetch_retries": getattr(args, "retries", None),
            "major_change_threshold": getattr(args, "major_threshold", None),
            "content_root": getattr(args, "content_root", None),
            "vault_state_path": getattr(args, "vault_state", None),
            "domain_patterns_file": getattr(args, "patterns_file", None),
            "sso_state_path": getattr(args, "sso_state", None),
        }
        for name, value in overrides.items():
            if value is not None:
                setattr(cfg, name, value)
        return cfg

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger (never the master key)."""
        logger.info("=" * 60)
        logger.info("SCRAPER RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Workers:          {self.max_workers} global")
        logger.info(f"  Fetch Timeout:    {self.fetch_timeout_seconds}s")
        logger.info(f"  Fetch Retries:    {self.max_fetch_retries} (base delay {self.retry_base_delay}s)")
        logger.info(f"  Login Attempts:   {self.max_login_attempts} per domain per run")
        logger.info(f"  Stale After:      {self.credential_failure_threshold} failures")
        logger.info(f"  Major Change:     > {self.major_change_threshold}%")
        logger.info(f"  Content Root:     {self.content_root}")
        logger.info(f"  Master Key:       {'configured' if self.master_key else 'MISSING'}")
        if self.vault_state_path:
            logger.info(f"  Vault State:      {self.vault_state_path}")
        if self.domain_patterns_file:
            logger.info(f"  Extra Patterns:   {self.domain_patterns_file}")
        if self.sso_state_path:
            logger.info(f"  Host SSO State:   {self.sso_state_path} (max {self.sso_max_age_hours}h)")
        logger.info("=" * 60)
