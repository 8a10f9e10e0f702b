"""
Pipeline Wiring
===============
Builds every component from one ``ScraperRunConfig``.

The entry point owns the returned ``Pipeline``: it schedules jobs on
``pipeline.scheduler`` and calls ``await pipeline.close()`` on exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .auth.login_detector import LoginPageDetector
from .auth.orchestrator import AuthenticationOrchestrator
from .auth.site_rules import SiteRuleRegistry
from .auth.sso import NoSsoSessionProvider, StorageStateSessionProvider
from .auth.vault import CredentialVault
from .change_detector import ChangeDetector, SnapshotStore
from .content_saver import FileContentSaver
from .domain_classifier import DomainClassifier, default_patterns, load_patterns
from .fetchers import PlaywrightPageFetcher, RequestsPageFetcher, RoutingPageFetcher
from .run_config import ScraperRunConfig
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    config: ScraperRunConfig
    classifier: DomainClassifier
    vault: CredentialVault
    detector: LoginPageDetector
    fetcher: RoutingPageFetcher
    orchestrator: AuthenticationOrchestrator
    change_detector: ChangeDetector
    content_saver: FileContentSaver
    scheduler: JobScheduler

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.fetcher.close()


def build_classifier(config: ScraperRunConfig, site_rules: SiteRuleRegistry) -> DomainClassifier:
    patterns = default_patterns()
    if config.domain_patterns_file:
        patterns += load_patterns(config.domain_patterns_file, site_rules)
    return DomainClassifier(patterns)


def build_vault(config: ScraperRunConfig) -> CredentialVault:
    return CredentialVault(
        config.master_key,
        failure_threshold=config.credential_failure_threshold,
        state_path=config.vault_state_path,
    )


def build_pipeline(config: ScraperRunConfig) -> Pipeline:
    """Wire the full scraping core.

    Raises:
        VaultConfigurationError: if no valid master key is configured.
    """
    site_rules = SiteRuleRegistry.with_builtins()
    classifier = build_classifier(config, site_rules)
    vault = build_vault(config)
    detector = LoginPageDetector(site_rules)

    fetcher = RoutingPageFetcher(
        static=RequestsPageFetcher(config.user_agent, timeout=config.fetch_timeout_seconds),
        dynamic=PlaywrightPageFetcher(config.user_agent, timeout=config.fetch_timeout_seconds),
    )
    if config.sso_state_path:
        sessions = StorageStateSessionProvider(
            config.sso_state_path, fetcher, max_age_hours=config.sso_max_age_hours
        )
    else:
        sessions = NoSsoSessionProvider()

    orchestrator = AuthenticationOrchestrator(classifier, vault, detector, fetcher, sessions, config)
    change_detector = ChangeDetector(SnapshotStore(), config.major_change_threshold)
    saver = FileContentSaver(config.content_root)
    scheduler = JobScheduler(orchestrator, change_detector, saver, config)

    logger.info(f"[APP] Pipeline ready ({len(classifier.patterns)} domain patterns)")
    return Pipeline(
        config=config,
        classifier=classifier,
        vault=vault,
        detector=detector,
        fetcher=fetcher,
        orchestrator=orchestrator,
        change_detector=change_detector,
        content_saver=saver,
        scheduler=scheduler,
    )
