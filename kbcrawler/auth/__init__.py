"""
Authentication Module
=====================
Everything between "this URL needs a login" and "here is the content".

Architecture:
    - ``CredentialVault``            — encrypted, domain-keyed credentials
    - ``LoginPageDetector``          — markup-only login-page classifier
    - ``SiteRuleRegistry``           — portal selector sets (SAP, Salesforce, ...)
    - ``AuthenticationOrchestrator`` — fetch / detect / authenticate / verify FSM
    - ``HostSessionProvider``        — the host application's SSO session

Extending:
    To support a new portal, register a ``SiteRule`` with its selectors.
    No detector or orchestrator changes are needed.
"""

from .site_rules import SiteRuleRegistry, BUILTIN_RULES
from .vault import CredentialVault, generate_master_key
from .login_detector import LoginPageDetector, Heuristic
from .sso import HostSessionProvider, NoSsoSessionProvider, StorageStateSessionProvider
from .orchestrator import AuthenticationOrchestrator, AttemptTracker, AuthOutcome, AuthState

__all__ = [
    "SiteRuleRegistry",
    "BUILTIN_RULES",
    "CredentialVault",
    "generate_master_key",
    "LoginPageDetector",
    "Heuristic",
    "HostSessionProvider",
    "NoSsoSessionProvider",
    "StorageStateSessionProvider",
    "AuthenticationOrchestrator",
    "AttemptTracker",
    "AuthOutcome",
    "AuthState",
]
