"""
kbcrawler
An authentication-aware scraping core: domain classification, encrypted
credentials, login-page detection, bounded authentication, recurring jobs
and content-change tracking.

CLI Usage:
    python -m kbcrawler <command> [options]

    Commands:
        classify        Show the authentication regime for a URL
        gen-key         Print a new credential master key
        add-credential  Store an encrypted credential in the vault state file
        run             Schedule jobs from a JSON file and run them
"""

from .models import (
    AuthType,
    ContentClassification,
    JobRun,
    JobStatus,
    Regime,
    RunOutcome,
    ScrapeJob,
    ScrapeResult,
)
from .errors import KBCrawlerError, ScrapeFailure
from .domain_classifier import DomainClassifier
from .auth import AuthenticationOrchestrator, CredentialVault, LoginPageDetector
from .change_detector import ChangeDetector, SnapshotStore
from .content_saver import FileContentSaver
from .scheduler import JobScheduler
from .run_config import ScraperRunConfig
from .app import build_pipeline

__all__ = [
    'AuthType',
    'ContentClassification',
    'JobRun',
    'JobStatus',
    'Regime',
    'RunOutcome',
    'ScrapeJob',
    'ScrapeResult',
    'KBCrawlerError',
    'ScrapeFailure',
    'DomainClassifier',
    'AuthenticationOrchestrator',
    'CredentialVault',
    'LoginPageDetector',
    'ChangeDetector',
    'SnapshotStore',
    'FileContentSaver',
    'JobScheduler',
    'ScraperRunConfig',
    'build_pipeline',
]

__version__ = '1.0.0'
